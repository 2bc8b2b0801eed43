# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
Rootvol sizes the EBS root volume of a freshly provisioned node according
to its instance type, and leaves it alone when local NVMe instance storage
is available instead.
"""

__version__ = "1.0.0"


def _redirect_eliot_logs_for_trial():
    """
    Enable Eliot logging to the ``_trial/test.log`` file.
    """
    import os
    import sys
    if os.path.basename(sys.argv[0]) == "trial":
        from eliot.twisted import redirectLogsForTrial
        redirectLogsForTrial()
_redirect_eliot_logs_for_trial()
del _redirect_eliot_logs_for_trial
