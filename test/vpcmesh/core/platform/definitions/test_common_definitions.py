# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError

import vpcmesh.core.platform.definitions.aws.common as common
from vpcmesh.core.platform.definitions.aws.common import (
    MAX_SLEEP_INTERVAL_PARAM,
    AWSAccessPair,
    exponential_retry,
    get_code_for_exception,
    get_session,
    is_not_found,
)


def _client_error(code, message="msg"):
    return ClientError(operation_name="op", error_response={"Error": {"Code": code, "Message": message}})


class TestPlatformCommonDefinitions:
    @pytest.fixture()
    def no_sleep(self, monkeypatch):
        sleep = MagicMock()
        monkeypatch.setattr(common.time, "sleep", sleep)
        return sleep

    def test_get_code_for_exception(self):
        assert get_code_for_exception(_client_error("InvalidVpcID.NotFound")) == "InvalidVpcID.NotFound"
        assert get_code_for_exception(ValueError()) == "ValueError"
        assert is_not_found(_client_error("InvalidRoute.NotFound"))
        assert not is_not_found(_client_error("DependencyViolation"))

    def test_exponential_retry_on_retryable(self, no_sleep):
        func = MagicMock(side_effect=[_client_error("RequestLimitExceeded"), _client_error("InvalidVpcID.NotFound"), "done"])
        assert exponential_retry(func, {"InvalidVpcID.NotFound"}, VpcId="vpc-1") == "done"
        func.assert_called_with(VpcId="vpc-1")
        assert [c.args[0] for c in no_sleep.call_args_list] == [1, 2]

    def test_exponential_retry_raises_non_retryable(self, no_sleep):
        func = MagicMock(side_effect=_client_error("UnauthorizedOperation"))
        with pytest.raises(ClientError):
            exponential_retry(func, {"InvalidVpcID.NotFound"})
        assert func.call_count == 1
        assert not no_sleep.called

    def test_exponential_retry_gives_up(self, no_sleep):
        func = MagicMock(side_effect=_client_error("Throttling"))
        with pytest.raises(ClientError):
            exponential_retry(func, [], **{MAX_SLEEP_INTERVAL_PARAM: 8})
        # slept 1, 2 and 4 secs, the next interval hits the limit
        assert func.call_count == 3

    def test_get_session_rejects_profile_and_access_pair(self):
        with pytest.raises(ValueError):
            get_session("us-east-1", profile_name="dev", access_pair=AWSAccessPair("key", "secret"))

    def test_get_session_assumes_role(self):
        with patch("vpcmesh.core.platform.definitions.aws.common.boto3") as mock_boto3:
            base_session = MagicMock()
            mock_boto3.Session.side_effect = [base_session, MagicMock(region_name="eu-west-1")]
            base_session.client.return_value.assume_role.return_value = {
                "Credentials": {"AccessKeyId": "id", "SecretAccessKey": "secret", "SessionToken": "token"}
            }

            session = get_session("eu-west-1", role_arn="arn:aws:iam::123456789012:role/peering")

            assert session.region_name == "eu-west-1"
            base_session.client.return_value.assume_role.assert_called_once_with(
                RoleArn="arn:aws:iam::123456789012:role/peering", RoleSessionName="vpcmesh", DurationSeconds=3600
            )
            assert mock_boto3.Session.call_args_list[1].kwargs == {
                "aws_access_key_id": "id",
                "aws_secret_access_key": "secret",
                "aws_session_token": "token",
                "region_name": "eu-west-1",
            }
