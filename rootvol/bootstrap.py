# Copyright ClusterHQ Inc.  See LICENSE file for details.
# -*- test-case-name: rootvol.test.test_bootstrap -*-

"""
Drive a single bootstrap run from instance discovery to a resized root
filesystem, and report how it ended.
"""

import time

from constantly import Names, NamedConstant
from eliot import write_traceback

from ._logging import STATE_CHANGE, BOOTSTRAP_OUTCOME
from .common import Deadline
from .exceptions import ExitCodes, RootvolError, exit_code_for
from .model import NOOP
from .policy import decide

# Seconds a whole run may take, including metadata retries and waiting for
# EBS.
DEFAULT_TIMEOUT = 300

# Values of the ``outcome`` field of the outcome record when there is no
# ``ResizeOutcome``.
OUTCOME_NOOP = u"noop"
OUTCOME_DRY_RUN = u"dry-run"


class BootstrapStates(Names):
    """
    The states of a bootstrap run.

    A run goes ``START``, ``RESOLVING``, ``DECIDING``, then either
    ``SKIPPING`` or ``RESIZING``, and ends in ``DONE``; any failure ends it
    in ``FAILED``.
    """
    START = NamedConstant()
    RESOLVING = NamedConstant()
    DECIDING = NamedConstant()
    SKIPPING = NamedConstant()
    RESIZING = NamedConstant()
    DONE = NamedConstant()
    FAILED = NamedConstant()


def _describe_error(exception):
    return u"{}: {}".format(type(exception).__name__, exception)


class BootstrapOrchestrator(object):
    """
    Run the resolver, the policy and the executor once, in order.

    :ivar IInstanceMetadata metadata: Where the instance is discovered.
    :ivar RuleTable rules: The sizing rules.
    :ivar ResizeExecutor executor: What applies the decision.
    :ivar state: The current ``BootstrapStates`` constant.
    :ivar list transitions: Every state the run has entered, in order.
    """
    def __init__(self, metadata, rules, executor, timeout=DEFAULT_TIMEOUT,
                 clock=time.time, instance_id=None, dry_run=False):
        """
        :param timeout: Seconds the run may take.  Retrying the metadata
            sources and waiting for EBS both stop when they pass.
        :param clock: A nullary callable returning the current time.
        :param instance_id: The instance to act on, or ``None`` to ask the
            metadata service.
        :param bool dry_run: Resolve and decide, but never call the
            executor.
        """
        self.metadata = metadata
        self.rules = rules
        self.executor = executor
        self.timeout = timeout
        self.clock = clock
        self.instance_id = instance_id
        self.dry_run = dry_run
        self.state = None
        self.transitions = []

    def _enter(self, state):
        self.state = state
        self.transitions.append(state)
        STATE_CHANGE.log(state=state.name)

    def _resize(self, descriptor, decision, deadline):
        """
        Apply a resize decision to the root volume, measuring the volume
        first so that nothing from an earlier run is trusted.
        """
        status = self.executor.volume_api.describe_volume(
            descriptor.root_volume_id)
        return self.executor.apply(
            volume_id=descriptor.root_volume_id,
            current_size_gib=status.size_gib,
            decision=decision,
            device_path=descriptor.root_device_path,
            deadline=deadline,
        )

    def run(self):
        """
        Perform the run.

        Errors are never raised from here: each is logged and turned into the
        exit code of its kind.

        :return: The process exit code as ``int``.
        """
        start = self.clock()
        deadline = Deadline.after(self.timeout, clock=self.clock)
        decision = None
        outcome = None
        failed_in = None
        error = None
        exit_code = ExitCodes.OK

        self._enter(BootstrapStates.START)
        try:
            self._enter(BootstrapStates.RESOLVING)
            instance_id = self.instance_id
            if instance_id is None:
                instance_id = self.metadata.compute_instance_id(deadline)
            descriptor = self.metadata.resolve(instance_id, deadline)

            self._enter(BootstrapStates.DECIDING)
            decision = decide(descriptor, self.rules)

            if not decision.is_resize:
                self._enter(BootstrapStates.SKIPPING)
                outcome = OUTCOME_NOOP
            elif self.dry_run:
                outcome = OUTCOME_DRY_RUN
            else:
                self._enter(BootstrapStates.RESIZING)
                result = self._resize(descriptor, decision, deadline)
                if result is NOOP:
                    outcome = OUTCOME_NOOP
                else:
                    outcome = result.to_log_fields()
        except Exception as e:
            if not isinstance(e, RootvolError):
                write_traceback()
            failed_in = self.state.name
            error = _describe_error(e)
            exit_code = exit_code_for(e)
            self._enter(BootstrapStates.FAILED)
        else:
            self._enter(BootstrapStates.DONE)

        BOOTSTRAP_OUTCOME.log(
            decision=None if decision is None else decision.to_log_fields(),
            outcome=outcome,
            skip_reason=(
                None if decision is None or decision.is_resize
                else decision.reason.value
            ),
            duration_ms=max(0, int((self.clock() - start) * 1000)),
            exit_code=exit_code.value,
            final_state=self.state.name,
            failed_in=failed_in,
            error=error,
        )
        return exit_code.value
