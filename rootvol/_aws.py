# Copyright ClusterHQ Inc.  See LICENSE file for details.

"""
EC2 API connection and logging helpers shared by the metadata resolver and
the volume API.
"""

import logging

import boto3
from botocore.config import Config
from botocore.exceptions import (
    ClientError, EndpointConnectionError, ConnectTimeoutError,
    ReadTimeoutError,
)

from eliot import log_message, register_exception_extractor

from ._logging import AWS_ACTION, BOTO_LOG_HEADER

BOTO_NUM_RETRIES = 10

# http://docs.aws.amazon.com/AWSEC2/latest/APIReference/errors-overview.html
# for error details:
INCORRECT_MODIFICATION_STATE = u'IncorrectModificationState'
MODIFICATION_NOT_FOUND = u'InvalidVolumeModification.NotFound'
INSTANCE_NOT_FOUND = u'InvalidInstanceID.NotFound'
TRANSIENT_ERROR_CODES = frozenset([
    u'RequestLimitExceeded',
    u'Throttling',
    u'InternalError',
    u'ServiceUnavailable',
    u'Unavailable',
    # Describe calls are eventually consistent right after launch.
    INSTANCE_NOT_FOUND,
])

# Failures to reach the EC2 endpoint at all.
CONNECTION_ERRORS = (
    EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError,
)


# Register Eliot field extractor for ClientError responses.
register_exception_extractor(
    ClientError,
    lambda e: {
        "aws_code": e.response['Error']['Code'],
        "aws_message": str(e.response['Error'].get('Message', u'')),
        "aws_request_id": e.response.get(
            'ResponseMetadata', {}).get('RequestId', u''),
    }
)


def error_code(client_error):
    """
    :param ClientError client_error: An error raised by a boto3 call.

    :return: The EC2 error code of the error.
    """
    return client_error.response.get('Error', {}).get('Code')


class EliotLogHandler(logging.Handler):
    def emit(self, record):
        log_message(
            message_type=BOTO_LOG_HEADER, message=record.getMessage()
        )


def _bridge(logger, level):
    logger.setLevel(level)
    if not any(isinstance(handler, EliotLogHandler)
               for handler in logger.handlers):
        logger.addHandler(EliotLogHandler())


def enable_boto_logging(verbose=False):
    """
    Make boto3 and botocore log activity using Eliot.

    :param bool verbose: Also bridge botocore's debug logs.
    """
    _bridge(logging.getLogger("boto3"), logging.INFO)
    if verbose:
        _bridge(logging.getLogger("botocore"), logging.DEBUG)


def ec2_client(region):
    """
    Establish a connection to EC2.

    :param str region: The EC2 region slug, or ``None`` to use the region
        boto3 finds in its own configuration.

    :return: A boto3 EC2 client.
    """
    # Exponential backoff and retry for ``RequestLimitExceeded`` is handled
    # by botocore in "standard" mode.
    session = boto3.session.Session()
    return session.client(
        "ec2",
        region_name=region,
        config=Config(
            retries={"max_attempts": BOTO_NUM_RETRIES, "mode": "standard"},
        ),
    )


def boto3_log(method):
    """
    Decorator to run a boto3 backed method and log additional information
    about any exceptions that are raised.

    :param func method: The method to call.

    :return: A function which will call the method and do
        the extra exception logging.
    """
    def _run_with_logging(*args, **kwargs):
        """
        Run given boto3 backed method with exception logging for
        ``ClientError``.
        """
        with AWS_ACTION(operation=[method.__name__, list(args[1:]), kwargs]):
            return method(*args, **kwargs)
    _run_with_logging.__name__ = method.__name__
    _run_with_logging.__doc__ = method.__doc__
    return _run_with_logging
