# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Eliot message and action types shared by the components of a bootstrap run.
"""

from eliot import Field, ActionType, MessageType

# Begin: metadata resolution.

INSTANCE_ID = Field.for_types(
    u"instance_id", [str],
    u"The EC2 instance identifier.")
INSTANCE_TYPE = Field.for_types(
    u"instance_type", [str],
    u"The EC2 instance type.")
METADATA_PATH = Field.for_types(
    u"path", [str],
    u"The instance metadata path being read.")
LOCAL_DISKS = Field.for_types(
    u"local_disks", [list],
    u"Device paths of the disks reported as local instance storage.")
ROOT_VOLUME_ID = Field.for_types(
    u"root_volume_id", [str],
    u"The EBS volume backing the root device.")

FOUND = Field.for_types(
    u"found", [bool],
    u"Whether the metadata path exists.")

IMDS_GET = ActionType(
    u"rootvol:metadata:imds_get",
    [METADATA_PATH],
    [FOUND],
    u"Reading a value from the instance metadata service.")

RESOLVE_INSTANCE = ActionType(
    u"rootvol:metadata:resolve",
    [INSTANCE_ID],
    [INSTANCE_TYPE, ROOT_VOLUME_ID, LOCAL_DISKS],
    u"Building the descriptor of the running instance.")

# End: metadata resolution.

# Begin: EBS volume API.

# An OPERATION is a list of:
# IVolumeAPI method name, positional arguments, keyword arguments.
OPERATION = Field.for_types(
    u"operation", [list],
    u"The IVolumeAPI operation being executed, "
    u"along with positional and keyword arguments.")

AWS_ACTION = ActionType(
    u"rootvol:executor:aws",
    [OPERATION],
    [],
    u"An IVolumeAPI operation is executing using the EC2 API.")

BOTO_LOG_HEADER = u'rootvol:executor:aws:boto_logs'

VOLUME_ID = Field.for_types(
    u"volume_id", [str],
    u"The identifier of volume of interest.")
SIZE_GIB = Field.for_types(
    u"size_gib", [int],
    u"Current size of the volume, in GiB.")
TARGET_SIZE_GIB = Field.for_types(
    u"target_size_gib", [int],
    u"Size the volume is being grown to, in GiB.")
MODIFICATION_STATE = Field.for_types(
    u"modification_state", [str, type(None)],
    u"State of the latest modification of the volume.")
WAIT_TIME = Field.for_types(
    u"wait_time", [float, int],
    u"Time, in seconds, waited so far for the modification.")

WAITING_FOR_VOLUME_MODIFICATION = MessageType(
    u"rootvol:executor:volume_modification_wait",
    [VOLUME_ID, SIZE_GIB, TARGET_SIZE_GIB, MODIFICATION_STATE, WAIT_TIME],
    u"Waiting for a volume modification to reach a usable state.",)

MODIFICATION_ALREADY_IN_PROGRESS = MessageType(
    u"rootvol:executor:modification_in_progress",
    [VOLUME_ID, TARGET_SIZE_GIB],
    u"A grow request was refused because a modification is already "
    u"in progress; waiting for it instead.",)

# End: EBS volume API.

# Begin: resize execution.

DEVICE_PATH = Field.for_types(
    u"device_path", [str],
    u"The block device the root filesystem lives on.")
CURRENT_SIZE_GIB = Field.for_types(
    u"current_size_gib", [int],
    u"Volume size reported by the provider at the start of the run.")

APPLY_DECISION = ActionType(
    u"rootvol:executor:apply",
    [VOLUME_ID, CURRENT_SIZE_GIB, DEVICE_PATH],
    [],
    u"Applying a resize decision to a volume.")

EXTEND_FILESYSTEM = ActionType(
    u"rootvol:executor:extend_filesystem",
    [DEVICE_PATH],
    [],
    u"Growing the root filesystem to fill its device.")

RECOVERING_FILESYSTEM = MessageType(
    u"rootvol:executor:recovering_filesystem",
    [VOLUME_ID, DEVICE_PATH, SIZE_GIB],
    u"The volume is already large enough but its filesystem is not; "
    u"only the filesystem step will run.")

ALREADY_SATISFIED = MessageType(
    u"rootvol:executor:already_satisfied",
    [VOLUME_ID, SIZE_GIB, TARGET_SIZE_GIB],
    u"The volume is already at least the target size.")

# End: resize execution.

# Begin: bootstrap.

STATE = Field.for_types(
    u"state", [str],
    u"The name of the state a bootstrap run entered.")

STATE_CHANGE = MessageType(
    u"rootvol:bootstrap:state",
    [STATE],
    u"A bootstrap run moved to a new state.")

DECISION = Field.for_types(
    u"decision", [dict, type(None)],
    u"The resize decision, or null if none was made.")
OUTCOME = Field.for_types(
    u"outcome", [dict, str, type(None)],
    u"What the executor did: an outcome record, \"noop\" or \"dry-run\".")
SKIP_REASON = Field.for_types(
    u"skip_reason", [str, type(None)],
    u"Why the volume was left alone, for skip decisions.")
DURATION_MS = Field.for_types(
    u"duration_ms", [int],
    u"How long the whole run took, in milliseconds.")
EXIT_CODE = Field.for_types(
    u"exit_code", [int],
    u"The process exit code of the run.")
FINAL_STATE = Field.for_types(
    u"final_state", [str],
    u"DONE or FAILED.")
FAILED_IN = Field.for_types(
    u"failed_in", [str, type(None)],
    u"The state the run was in when it failed.")
ERROR = Field.for_types(
    u"error", [str, type(None)],
    u"A description of the error the run failed with.")

BOOTSTRAP_OUTCOME = MessageType(
    u"rootvol:bootstrap:outcome",
    [DECISION, OUTCOME, SKIP_REASON, DURATION_MS, EXIT_CODE, FINAL_STATE,
     FAILED_IN, ERROR],
    u"The single record written at the end of every bootstrap run.")

# End: bootstrap.

# Begin: scripts.

CONFIG_PATH = Field.for_types(
    u"path", [str, type(None)],
    u"The configuration file read, or null if it does not exist.")

LOAD_CONFIGURATION = ActionType(
    u"rootvol:script:load_configuration",
    [CONFIG_PATH],
    [],
    u"Loading and validating the configuration file and rule table.")

SETUP_FAILED = MessageType(
    u"rootvol:script:setup_failed",
    [EXIT_CODE, ERROR],
    u"A run could not start because its configuration or the region "
    u"could not be determined.")

# End: scripts.
