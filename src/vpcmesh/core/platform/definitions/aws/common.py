# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import logging
import time
from typing import Iterable, Optional

import boto3
from botocore.exceptions import ClientError, WaiterError

from vpcmesh.core.entity import CoreData

module_logger = logging.getLogger(__name__)

# STS max for a plain (non-chained) assume-role
MAX_ASSUME_ROLE_DURATION = 43200  # 12 hours
DEFAULT_ASSUME_ROLE_DURATION = 3600


class AWSAccessPair(CoreData):
    def __init__(self, aws_access_key_id: str, aws_secret_access_key: str) -> None:
        self.aws_access_key_id = aws_access_key_id
        self.aws_secret_access_key = aws_secret_access_key


def get_code_for_exception(error):
    if isinstance(error, ClientError) and "Code" in error.response["Error"]:
        return error.response["Error"]["Code"]
    elif isinstance(error, WaiterError) and "Error" in error.last_response:
        return error.last_response["Error"]["Code"]
    elif hasattr(error, "error_code"):
        return error.error_code

    return error.__class__.__name__


def get_message_for_exception(error) -> str:
    if isinstance(error, ClientError):
        return error.response.get("Error", {}).get("Message", str(error))
    return str(error)


def is_not_found(error) -> bool:
    # e.g 'InvalidVpcID.NotFound', 'InvalidRoute.NotFound'
    return get_code_for_exception(error).endswith("NotFound")


# common AWS service errors
AWS_COMMON_RETRYABLE_ERRORS = [
    "TooManyRequestsException",
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "Unavailable",
    "InternalFailure",
    "InternalError",
    "InternalServerError",
    "ServiceUnavailable",
    "ServiceUnavailableException",
    # botocore common retryable errors
    "ConnectTimeoutError",
    "ReadTimeoutError",
    "EndpointConnectionError",
]


MAX_SLEEP_INTERVAL_PARAM = "_max_sleep_time_in_secs"
MAX_SLEEP_INTERVAL_DEFAULT = 64 + 1


def exponential_retry(func, service_retryable_errors: Iterable[str], *func_args, **func_kwargs):
    """
    Retries the specified function with a simple exponential backoff algorithm.
    :param func: The function to retry.
    :param service_retryable_errors: AWS service specific retryable error codes. These are added to an internal list
                                    of AWS common retryable errors to get a final list of retryable errors. Anything else
                                    is raised without a retry.
    :param func_args: The positional arguments to pass to the function.
    :param func_kwargs: The keyword arguments to pass to the function.
    :return: The return value of the retried function.
    """
    retryables = list(AWS_COMMON_RETRYABLE_ERRORS)
    retryables.extend(service_retryable_errors)
    sleepy_time = 1
    if MAX_SLEEP_INTERVAL_PARAM in func_kwargs:
        max_sleepy_time = func_kwargs.get(MAX_SLEEP_INTERVAL_PARAM)
        del func_kwargs[MAX_SLEEP_INTERVAL_PARAM]
    else:
        max_sleepy_time = MAX_SLEEP_INTERVAL_DEFAULT
    func_return = None
    while True:
        try:
            func_return = func(*func_args, **func_kwargs)
            module_logger.debug("Ran %s, got %s.", func.__name__ if hasattr(func, "__name__") else str(func), func_return)
            break
        except Exception as error:
            error_code = get_code_for_exception(error)
            if error_code in retryables:
                module_logger.critical(
                    f"Sleeping for {sleepy_time} to give AWS time to " f"connect resources. Retryable error_code={error_code!r}"
                )
                time.sleep(sleepy_time)
                sleepy_time = sleepy_time * 2
                if sleepy_time < max_sleepy_time:
                    continue
            raise
    return func_return


def get_session(
    region: str,
    profile_name: Optional[str] = None,
    access_pair: Optional[AWSAccessPair] = None,
    role_arn: Optional[str] = None,
    duration: int = DEFAULT_ASSUME_ROLE_DURATION,
) -> boto3.Session:
    """
    Wrapper around boto3.Session()

    Parameters
    region: string, AWS region the session is bound to
    profile_name: string, named profile from the shared credentials file
    access_pair: :class:`AWSAccessPair` (key_id and access_key), mutually exclusive with profile_name
    role_arn: string, optional role to assume on top of the base credentials
    duration: int, duration (in seconds) for assumed role credentials validity

    Returns
    boto3.Session
    """
    if profile_name and access_pair:
        raise ValueError("Either a profile or an access pair can be used for a session, not both!")

    if access_pair:
        module_logger.warning("Creating boto3.Session with access key pair.")
        base_session = boto3.Session(access_pair.aws_access_key_id, access_pair.aws_secret_access_key, None, region)
    elif profile_name:
        base_session = boto3.Session(profile_name=profile_name, region_name=region)
    else:
        # Use system defaults (~/.aws, etc).
        base_session = boto3.Session(region_name=region)

    if role_arn:
        return get_assumed_role_session(role_arn, base_session, duration=duration, context_region=region)
    return base_session


def get_assumed_role_session(
    role_arn: str,
    base_session: boto3.Session,
    duration: int = DEFAULT_ASSUME_ROLE_DURATION,
    session_name: str = "vpcmesh",
    context_region: str = None,
) -> boto3.Session:
    sts_connection = base_session.client("sts")
    kwargs = {"RoleArn": role_arn, "RoleSessionName": session_name, "DurationSeconds": min(duration, MAX_ASSUME_ROLE_DURATION)}
    # IAM propagation is eventually consistent, a freshly created role might not be assumable yet.
    assume_role_object = exponential_retry(sts_connection.assume_role, ["AccessDenied"], **kwargs)

    credentials = assume_role_object["Credentials"]
    return boto3.Session(
        aws_access_key_id=credentials["AccessKeyId"],
        aws_secret_access_key=credentials["SecretAccessKey"],
        aws_session_token=credentials["SessionToken"],
        region_name=context_region if context_region else base_session.region_name,
    )
