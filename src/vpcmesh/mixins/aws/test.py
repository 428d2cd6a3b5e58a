# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import os
from typing import Dict, Sequence

import boto3
import pytest
from moto import mock_aws

from vpcmesh.core.platform.definitions.aws.ec2.client_wrapper import VPCManager
from vpcmesh.core.topology.config import InstanceConfig, TopologyConfig

# moto only validates image ids when MOTO_ENABLE_AMI_VALIDATION is set
MOTO_IMAGE_ID = "ami-12c6146b"


class AWSTestBase:
    testing_keyname = "testing"
    region = "us-east-1"
    # default moto acc id
    account_id = "123456789012"
    regions: Sequence[str] = ("us-east-1", "us-west-2", "eu-west-1")

    @pytest.fixture
    def aws_credentials(self):
        os.environ["AWS_ACCESS_KEY_ID"] = self.testing_keyname
        os.environ["AWS_SECRET_ACCESS_KEY"] = self.testing_keyname
        os.environ["AWS_SECURITY_TOKEN"] = self.testing_keyname
        os.environ["AWS_SESSION_TOKEN"] = self.testing_keyname
        os.environ["AWS_DEFAULT_REGION"] = self.region

    @pytest.fixture
    def aws(self, aws_credentials):
        """All of the AWS APIs are mocked (and the mocked state discarded) per test."""
        with mock_aws():
            yield

    @pytest.fixture
    def ec2_client(self, aws):
        yield boto3.client(service_name="ec2", region_name=self.region)

    @pytest.fixture
    def vpc_manager(self, aws) -> VPCManager:
        yield VPCManager(boto3.Session(region_name=self.region), self.region)

    @pytest.fixture
    def managers(self, aws) -> Dict[str, VPCManager]:
        yield {region: VPCManager(boto3.Session(region_name=region), region) for region in self.regions}

    @classmethod
    def create_topology(cls, name: str = "test-mesh", **builder_params) -> TopologyConfig:
        """Three region full mesh with non-overlapping CIDRs and waits short enough for the mocked control-plane."""
        builder = TopologyConfig.builder().with_name(name).with_instance(InstanceConfig(image_id=MOTO_IMAGE_ID))
        for i, region in enumerate(cls.regions):
            builder.with_region(region, f"10.{i}.0.0/16", f"10.{i}.1.0/24")
        builder.with_wait(timeout_secs=5, initial_delay_secs=0.01, max_delay_secs=0.1)
        for method, args in builder_params.items():
            getattr(builder, method)(*args)
        return builder.build()
