# Copyright ClusterHQ Inc.  See LICENSE file for details.
# -*- test-case-name: rootvol.test.test_script -*-

"""
The command-line ``rootvol-*`` tools.
"""

from collections.abc import Hashable
import json
import sys
import time

import yaml

from jsonschema import Draft4Validator, ValidationError

from pyrsistent import PClass, field

from zope.interface import implementer

from twisted.python.filepath import FilePath
from twisted.python.usage import Options, UsageError

from .common.script import (
    ICommandLineScript, rootvol_standard_options, RootvolScriptRunner,
)
from ._aws import ec2_client, enable_boto_logging
from ._logging import LOAD_CONFIGURATION, SETUP_FAILED
from .bootstrap import BootstrapOrchestrator, DEFAULT_TIMEOUT
from .exceptions import ConfigurationError, exit_code_for
from .executor import EBSVolumeAPI, LocalFilesystemExtender, ResizeExecutor
from .metadata import EC2InstanceMetadata, IMDSClient, RegionalEC2Client
from .model import BlockDevice, InstanceDescriptor
from .policy import decide, rule_table_from_configuration

__all__ = [
    "rootvol_bootstrap_main",
    "rootvol_plan_main",
]

DEFAULT_CONFIGURATION_PATH = u"/etc/rootvol/rootvol.yml"

# The rule table used when the configuration names none.
DEFAULT_RULES = FilePath(__file__).sibling(u"rules.yml")

_RULE_SCHEMA = {
    "oneOf": [
        {"type": "integer", "minimum": 1},
        {
            "type": "object",
            "required": ["size"],
            "additionalProperties": False,
            "properties": {
                "size": {"type": "integer", "minimum": 1},
                "iops": {"type": "integer"},
                "throughput": {"type": "integer"},
            },
        },
    ],
}

_RULES_SCHEMA = {
    "$schema": "http://json-schema.org/draft-04/schema#",
    "type": "object",
    "additionalProperties": _RULE_SCHEMA,
}

_CONFIGURATION_SCHEMA = {
    "$schema": "http://json-schema.org/draft-04/schema#",
    "type": "object",
    "required": ["version"],
    "additionalProperties": False,
    "properties": {
        "version": {
            "type": "number",
            "maximum": 1,
            "minimum": 1,
        },
        "region": {"type": "string"},
        "timeout": {"type": "integer", "minimum": 1},
        "rules": _RULES_SCHEMA,
        "rules-file": {"type": "string"},
    },
    # Only one source of rules.
    "not": {"required": ["rules", "rules-file"]},
}


class _UniqueKeyLoader(yaml.SafeLoader):
    """
    A ``SafeLoader`` that refuses mappings with repeated keys instead of
    keeping the last value.
    """


def _construct_unique_mapping(loader, node, deep=False):
    loader.flatten_mapping(node)
    seen = set()
    for key_node, _ in node.value:
        key = loader.construct_object(key_node, deep=deep)
        if not isinstance(key, Hashable):
            continue
        if key in seen:
            raise yaml.constructor.ConstructorError(
                u"while constructing a mapping", node.start_mark,
                u"found duplicate key {!r}".format(key), key_node.start_mark)
        seen.add(key)
    return loader.construct_mapping(node, deep=deep)


_UniqueKeyLoader.add_constructor(
    yaml.resolver.BaseResolver.DEFAULT_MAPPING_TAG,
    _construct_unique_mapping,
)


def load_yaml(path):
    """
    Parse a YAML file, rejecting repeated mapping keys.

    :param FilePath path: The file to read.

    :raise ConfigurationError: If the file cannot be read or parsed.
    :return: The parsed document.
    """
    try:
        return yaml.load(path.getContent(), Loader=_UniqueKeyLoader)
    except (IOError, OSError) as e:
        raise ConfigurationError(
            u"Could not read {}: {}".format(path.path, e))
    except yaml.YAMLError as e:
        raise ConfigurationError(
            u"Could not parse {}: {}".format(path.path, e))


def _validate(schema, document, path):
    v = Draft4Validator(schema)
    try:
        v.validate(document)
    except ValidationError as e:
        location = u"/".join(str(part) for part in e.absolute_path)
        raise ConfigurationError(
            u"Invalid configuration in {} at {!r}: {}".format(
                path.path, location, e.message))


def validate_configuration(configuration, path=FilePath(
        DEFAULT_CONFIGURATION_PATH)):
    """
    Validate a provided configuration.

    :param dict configuration: A configuration for ``rootvol-bootstrap``.
    :param FilePath path: Where the configuration came from, for error
        messages.

    :raises ConfigurationError: if the configuration is invalid.
    """
    _validate(_CONFIGURATION_SCHEMA, configuration, path)


def get_configuration(options):
    """
    Load and validate the configuration in the file specified by the given
    options.

    A missing file is not an error: the defaults and the embedded rule table
    are used.

    :param options: The parsed command line options, with a ``config``
        ``FilePath``.

    :return: A ``dict`` representing the configuration.
    """
    path = options[u'config']
    if not path.exists():
        configuration = {u"version": 1}
    else:
        configuration = load_yaml(path)
        validate_configuration(configuration, path)
    configuration.setdefault(u"timeout", DEFAULT_TIMEOUT)
    return configuration


def load_rules(configuration, default_rules=DEFAULT_RULES):
    """
    Build the rule table a configuration asks for.

    :param dict configuration: A validated configuration.
    :param FilePath default_rules: The rule table used when the
        configuration names none.

    :raise ConfigurationError: If the rules are malformed or ambiguous.
    :return: A ``RuleTable``.
    """
    if u"rules" in configuration:
        return rule_table_from_configuration(configuration[u"rules"])
    if u"rules-file" in configuration:
        path = FilePath(configuration[u"rules-file"])
    else:
        path = default_rules
    rules = load_yaml(path)
    _validate(_RULES_SCHEMA, rules, path)
    return rule_table_from_configuration(rules)


def _configure(options):
    """
    :return: A tuple of the configuration and the rule table.
    """
    path = options[u'config']
    with LOAD_CONFIGURATION(path=path.path if path.exists() else None):
        configuration = get_configuration(options)
        return configuration, load_rules(configuration)


def _positive_integer(name, value):
    try:
        result = int(value)
    except ValueError:
        raise UsageError(u"--{} must be an integer.".format(name))
    if result <= 0:
        raise UsageError(u"--{} must be positive.".format(name))
    return result


@rootvol_standard_options
class BootstrapOptions(Options):
    """
    Command line options for ``rootvol-bootstrap``.
    """
    longdesc = """\
    rootvol-bootstrap grows the EBS root volume of this instance to the size
    configured for its instance type, then grows the root filesystem.  It
    leaves the volume alone on instances with local NVMe instance storage.
    Run it once per boot, before anything writes heavily to the root
    filesystem.
    """

    synopsis = "Usage: rootvol-bootstrap [OPTIONS]"

    optParameters = [
        ["config", "c", DEFAULT_CONFIGURATION_PATH,
         "The configuration file."],
        ["instance-id", "i", None,
         "The instance to act on.  Defaults to the instance this runs on."],
        ["timeout", "t", None,
         "Seconds to wait for the volume to grow.  Overrides the "
         "configuration file."],
    ]

    optFlags = [
        ["dry-run", None,
         "Decide what to do and log it without changing anything."],
    ]

    def postOptions(self):
        self['config'] = FilePath(self['config'])
        if self['timeout'] is not None:
            self['timeout'] = _positive_integer('timeout', self['timeout'])


@rootvol_standard_options
class PlanOptions(Options):
    """
    Command line options for ``rootvol-plan``.
    """
    longdesc = """\
    rootvol-plan prints the decision rootvol-bootstrap would make for an
    instance type, using the configured rule table.  It does not contact
    AWS.
    """

    synopsis = "Usage: rootvol-plan --instance-type TYPE [OPTIONS]"

    optParameters = [
        ["config", "c", DEFAULT_CONFIGURATION_PATH,
         "The configuration file."],
        ["instance-type", "t", None,
         "The EC2 instance type to plan for."],
    ]

    optFlags = [
        ["local-disk", None,
         "Plan for an instance with local NVMe instance storage."],
    ]

    def postOptions(self):
        if not self['instance-type']:
            raise UsageError("--instance-type is required.")
        self['config'] = FilePath(self['config'])


def _setup_failed(exception, stderr):
    exit_code = exit_code_for(exception).value
    SETUP_FAILED.log(exit_code=exit_code, error=str(exception))
    stderr.write(u"ERROR: {}\n".format(exception))
    return exit_code


@implementer(ICommandLineScript)
class BootstrapScript(PClass):
    """
    Implement top-level logic for the ``rootvol-bootstrap`` script.

    :ivar ec2_client_factory: A one-argument callable taking a region and
        returning a boto3 EC2 client.
    :ivar imds_factory: A nullary callable returning an ``IMDSClient``.
    :ivar extender_factory: A nullary callable returning an
        ``IFilesystemExtender`` provider.
    """
    ec2_client_factory = field(initial=(lambda: ec2_client), mandatory=True)
    imds_factory = field(initial=(lambda: IMDSClient), mandatory=True)
    extender_factory = field(
        initial=(lambda: LocalFilesystemExtender), mandatory=True)
    clock = field(initial=(lambda: time.time), mandatory=True)
    sleep = field(initial=(lambda: time.sleep), mandatory=True)
    stderr = field(initial=(lambda: sys.stderr), mandatory=True)

    def get_orchestrator(self, options):
        """
        Assemble the components of a run from the configuration.

        :raise ConfigurationError: If the configuration is invalid.
        :return: A ``BootstrapOrchestrator``.
        """
        configuration, rules = _configure(options)
        timeout = options[u'timeout']
        if timeout is None:
            timeout = configuration[u'timeout']

        imds = self.imds_factory()
        connection = RegionalEC2Client(
            imds,
            region=configuration.get(u'region'),
            factory=self.ec2_client_factory,
            sleep=self.sleep,
        )

        executor = ResizeExecutor(
            volume_api=EBSVolumeAPI(connection),
            extender=self.extender_factory(),
            clock=self.clock,
            sleep=self.sleep,
            timeout=timeout,
        )
        return BootstrapOrchestrator(
            metadata=EC2InstanceMetadata(
                connection, imds=imds, sleep=self.sleep),
            rules=rules,
            executor=executor,
            timeout=timeout,
            clock=self.clock,
            instance_id=options[u'instance-id'],
            dry_run=options[u'dry-run'],
        )

    def main(self, options):
        enable_boto_logging(verbose=options[u'verbosity'] > 0)
        try:
            orchestrator = self.get_orchestrator(options)
        except ConfigurationError as e:
            return _setup_failed(e, self.stderr)
        return orchestrator.run()


@implementer(ICommandLineScript)
class PlanScript(PClass):
    """
    Implement top-level logic for the ``rootvol-plan`` script.
    """
    stdout = field(initial=(lambda: sys.stdout), mandatory=True)
    stderr = field(initial=(lambda: sys.stderr), mandatory=True)

    def main(self, options):
        try:
            _, rules = _configure(options)
        except ConfigurationError as e:
            return _setup_failed(e, self.stderr)
        disks = []
        if options[u'local-disk']:
            disks.append(BlockDevice(
                device_path=u"/dev/nvme1n1", is_local_ephemeral=True,
                size_gib=0,
            ))
        descriptor = InstanceDescriptor(
            instance_id=u"i-plan",
            instance_type=options[u'instance-type'],
            attached_local_disks=disks,
            root_volume_id=u"vol-plan",
            root_device_path=u"/dev/xvda",
        )
        decision = decide(descriptor, rules)
        self.stdout.write(
            json.dumps(decision.to_log_fields(), sort_keys=True) + u"\n")
        return 0


def rootvol_bootstrap_main():
    """
    Implementation of the ``rootvol-bootstrap`` command line script.
    """
    return RootvolScriptRunner(
        script=BootstrapScript(),
        options=BootstrapOptions(),
    ).main()


def rootvol_plan_main():
    """
    Implementation of the ``rootvol-plan`` command line script.
    """
    return RootvolScriptRunner(
        script=PlanScript(),
        options=PlanOptions(),
        logging=False,
    ).main()
