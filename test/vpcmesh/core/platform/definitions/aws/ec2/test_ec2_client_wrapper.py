# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import boto3
import pytest
from botocore.exceptions import ClientError
from mock import MagicMock

from vpcmesh.core.platform.definitions.aws.ec2.client_wrapper import (
    ANY_IPV4_CIDR,
    TOPOLOGY_TAG_KEY,
    VPCManager,
    build_ip_permission,
    get_tags,
    missing_permissions,
)
from vpcmesh.core.topology.errors import DependencyViolationError, ProviderRejected
from vpcmesh.mixins.aws.test import MOTO_IMAGE_ID, AWSTestBase

TOPOLOGY = "wrapper-test"


def _client_error(code, message="msg"):
    return ClientError(operation_name="op", error_response={"Error": {"Code": code, "Message": message}})


class TestClientWrapperForEC2(AWSTestBase):
    @pytest.fixture()
    def mock_ec2_client(self):
        return MagicMock()

    @pytest.fixture()
    def mock_vpc_manager(self, mock_ec2_client):
        session = MagicMock()
        session.client.return_value = mock_ec2_client
        return VPCManager(session, "us-east-1")

    @pytest.fixture()
    def network(self, vpc_manager):
        vpc = vpc_manager.create_vpc(TOPOLOGY, "net-vpc", "10.0.0.0/16")
        az = sorted(vpc_manager.get_available_azs())[0]
        subnet = vpc_manager.create_subnet(TOPOLOGY, "net-subnet", vpc["VpcId"], "10.0.1.0/24", az)
        return vpc["VpcId"], subnet["SubnetId"]

    def test_vpc_lifecycle(self, vpc_manager, ec2_client):
        assert vpc_manager.find_vpc(TOPOLOGY, "my-vpc") is None

        vpc = vpc_manager.create_vpc(TOPOLOGY, "my-vpc", "10.0.0.0/16")

        found = vpc_manager.find_vpc(TOPOLOGY, "my-vpc")
        assert found["VpcId"] == vpc["VpcId"]
        assert found["CidrBlock"] == "10.0.0.0/16"
        assert get_tags(found) == {"Name": "my-vpc", TOPOLOGY_TAG_KEY: TOPOLOGY}
        # same name in another topology is a different resource
        assert vpc_manager.find_vpc("other-topology", "my-vpc") is None
        dns = ec2_client.describe_vpc_attribute(VpcId=vpc["VpcId"], Attribute="enableDnsHostnames")
        assert dns["EnableDnsHostnames"]["Value"]

        assert vpc_manager.delete_vpc(vpc["VpcId"])
        assert vpc_manager.describe_vpc(vpc["VpcId"]) is None
        # already deleted
        assert not vpc_manager.delete_vpc(vpc["VpcId"])

    def test_subnet(self, vpc_manager, network):
        vpc_id, subnet_id = network
        subnet = vpc_manager.find_subnet(vpc_id, "net-subnet")
        assert subnet["SubnetId"] == subnet_id
        assert subnet["CidrBlock"] == "10.0.1.0/24"
        assert subnet["MapPublicIpOnLaunch"]
        assert vpc_manager.find_subnet(vpc_id, "unknown") is None

    def test_internet_gateway(self, vpc_manager, network):
        vpc_id, _ = network
        igw = vpc_manager.create_internet_gateway(TOPOLOGY, "net-igw")
        assert vpc_manager.find_internet_gateway(vpc_id) is None
        assert vpc_manager.find_detached_internet_gateway(TOPOLOGY, "net-igw")["InternetGatewayId"] == igw["InternetGatewayId"]

        vpc_manager.attach_internet_gateway(igw["InternetGatewayId"], vpc_id)

        assert vpc_manager.find_internet_gateway(vpc_id)["InternetGatewayId"] == igw["InternetGatewayId"]
        assert vpc_manager.find_detached_internet_gateway(TOPOLOGY, "net-igw") is None
        assert vpc_manager.detach_and_delete_internet_gateway(igw["InternetGatewayId"], vpc_id)
        assert vpc_manager.find_internet_gateway(vpc_id) is None

    def test_route_table(self, vpc_manager, network):
        vpc_id, subnet_id = network
        igw = vpc_manager.create_internet_gateway(TOPOLOGY, "net-igw")
        vpc_manager.attach_internet_gateway(igw["InternetGatewayId"], vpc_id)
        route_table = vpc_manager.create_route_table(TOPOLOGY, "net-rt", vpc_id)
        route_table_id = route_table["RouteTableId"]

        association_id = vpc_manager.associate_route_table(route_table_id, subnet_id)
        vpc_manager.create_route(route_table_id, ANY_IPV4_CIDR, gateway_id=igw["InternetGatewayId"])

        found = vpc_manager.find_route_table(vpc_id, "net-rt")
        assert found["RouteTableId"] == route_table_id
        assert [a["RouteTableAssociationId"] for a in found["Associations"] if a.get("SubnetId") == subnet_id] == [association_id]
        routes = {r["DestinationCidrBlock"]: r.get("GatewayId") for r in vpc_manager.describe_route_table(route_table_id)["Routes"]}
        assert routes[ANY_IPV4_CIDR] == igw["InternetGatewayId"]

        assert vpc_manager.delete_route(route_table_id, ANY_IPV4_CIDR)
        assert vpc_manager.disassociate_route_table(association_id)
        assert vpc_manager.delete_route_table(route_table_id)
        assert vpc_manager.describe_route_table(route_table_id) is None

    def test_cross_region_peering(self, managers):
        east, west = managers["us-east-1"], managers["us-west-2"]
        east_vpc = east.create_vpc(TOPOLOGY, "east-vpc", "10.0.0.0/16")["VpcId"]
        west_vpc = west.create_vpc(TOPOLOGY, "west-vpc", "10.1.0.0/16")["VpcId"]

        pcx = east.create_peering_connection(TOPOLOGY, "east-west", east_vpc, west_vpc, "us-west-2")
        pcx_id = pcx["VpcPeeringConnectionId"]
        assert east.describe_peering_connection(pcx_id)["Status"]["Code"] == "pending-acceptance"
        # visible from both sides and in both directions
        assert [c["VpcPeeringConnectionId"] for c in east.find_peering_connections(east_vpc, west_vpc)] == [pcx_id]
        assert [c["VpcPeeringConnectionId"] for c in east.find_peering_connections(west_vpc, east_vpc)] == [pcx_id]

        west.accept_peering_connection(pcx_id)

        assert east.describe_peering_connection(pcx_id)["Status"]["Code"] == "active"
        assert east.delete_peering_connection(pcx_id)
        # deleted connections are not live anymore
        assert east.find_peering_connections(east_vpc, west_vpc) == []

    def test_security_group_rules(self, vpc_manager, network):
        vpc_id, _ = network
        group_id = vpc_manager.create_security_group(TOPOLOGY, "net-sg", vpc_id, "test group")
        permissions = [
            build_ip_permission("icmp", -1, -1, "10.1.0.0/16", "ICMP from peer"),
            build_ip_permission("tcp", 22, 22, "0.0.0.0/0", "SSH"),
        ]

        vpc_manager.authorize_ingress(group_id, permissions)
        # duplicates are tolerated
        vpc_manager.authorize_ingress(group_id, permissions)

        group = vpc_manager.find_security_group(vpc_id, "net-sg")
        assert group["GroupId"] == group_id
        assert missing_permissions(group["IpPermissions"], permissions) == []
        assert vpc_manager.delete_security_group(group_id)
        assert vpc_manager.find_security_group(vpc_id, "net-sg") is None

    def test_missing_permissions(self):
        existing = [
            {"IpProtocol": "-1", "IpRanges": [{"CidrIp": "0.0.0.0/0"}], "FromPort": 0, "ToPort": 0},
            {"IpProtocol": "tcp", "FromPort": 22, "ToPort": 22, "IpRanges": [{"CidrIp": "0.0.0.0/0", "Description": "old"}]},
        ]
        ssh = build_ip_permission("tcp", 22, 22, "0.0.0.0/0", "SSH")
        icmp = build_ip_permission("icmp", -1, -1, "10.1.0.0/16", "ICMP")
        assert missing_permissions(existing, [ssh, icmp]) == [icmp]
        assert missing_permissions(existing, [{"IpProtocol": "-1", "IpRanges": [{"CidrIp": "0.0.0.0/0"}]}]) == []

    def test_instance_lifecycle(self, vpc_manager, network):
        vpc_id, subnet_id = network
        group_id = vpc_manager.create_security_group(TOPOLOGY, "net-sg", vpc_id, "test group")

        instance = vpc_manager.run_instance(TOPOLOGY, "net-instance", subnet_id, group_id, MOTO_IMAGE_ID, "t2.micro", "#!/bin/bash\n")

        found = vpc_manager.find_instances(TOPOLOGY, "net-instance")
        assert [i["InstanceId"] for i in found] == [instance["InstanceId"]]
        assert [i["InstanceId"] for i in vpc_manager.list_instances_in_vpc(vpc_id)] == [instance["InstanceId"]]
        described = vpc_manager.describe_instance(instance["InstanceId"])
        assert described["SubnetId"] == subnet_id
        assert described["PrivateIpAddress"].startswith("10.0.1.")

        assert vpc_manager.terminate_instance(instance["InstanceId"])
        assert vpc_manager.find_instances(TOPOLOGY, "net-instance") == []

    def test_find_latest_image(self, mock_vpc_manager, mock_ec2_client):
        mock_ec2_client.describe_images.return_value = {
            "Images": [
                {"ImageId": "ami-old", "Name": "ubuntu-noble-1", "CreationDate": "2024-05-01T00:00:00.000Z"},
                {"ImageId": "ami-new", "Name": "ubuntu-noble-2", "CreationDate": "2025-01-01T00:00:00.000Z"},
            ]
        }
        assert mock_vpc_manager.find_latest_image("099720109477", "ubuntu-noble-*", "x86_64") == "ami-new"
        kwargs = mock_ec2_client.describe_images.call_args.kwargs
        assert kwargs["Owners"] == ["099720109477"]
        assert {"Name": "name", "Values": ["ubuntu-noble-*"]} in kwargs["Filters"]

        mock_ec2_client.describe_images.return_value = {"Images": []}
        assert mock_vpc_manager.find_latest_image("099720109477", "ubuntu-noble-*", "x86_64") is None

    def test_dependency_violation_is_mapped(self, mock_vpc_manager, mock_ec2_client):
        mock_ec2_client.delete_vpc.side_effect = _client_error("DependencyViolation", "has dependencies")
        with pytest.raises(DependencyViolationError) as error:
            mock_vpc_manager.delete_vpc("vpc-1")
        assert error.value.kind == "vpc"
        assert error.value.key == "vpc-1"

    def test_rejection_is_mapped(self, mock_vpc_manager, mock_ec2_client):
        mock_ec2_client.create_vpc.side_effect = _client_error("VpcLimitExceeded", "too many")
        with pytest.raises(ProviderRejected) as error:
            mock_vpc_manager.create_vpc(TOPOLOGY, "my-vpc", "10.0.0.0/16")
        assert error.value.error_code == "VpcLimitExceeded"
        assert error.value.error_message == "too many"
        assert isinstance(error.value.cause, ClientError)
        assert mock_ec2_client.create_vpc.call_count == 1

    def test_not_found_on_delete(self, mock_vpc_manager, mock_ec2_client):
        mock_ec2_client.delete_subnet.side_effect = _client_error("InvalidSubnetID.NotFound")
        assert not mock_vpc_manager.delete_subnet("subnet-1")

    def test_run_instance_uses_idempotency_token(self, mock_vpc_manager, mock_ec2_client):
        mock_ec2_client.run_instances.return_value = {"Instances": [{"InstanceId": "i-1"}]}
        mock_vpc_manager.run_instance(TOPOLOGY, "i", "subnet-1", "sg-1", "ami-1", "t2.micro", "", key_name="east-key")
        kwargs = mock_ec2_client.run_instances.call_args.kwargs
        assert kwargs["ClientToken"]
        assert kwargs["KeyName"] == "east-key"
        assert kwargs["TagSpecifications"][0]["ResourceType"] == "instance"

    def test_find_peering_connections_matches_both_vpcs(self, mock_vpc_manager, mock_ec2_client):
        def _pcx(pcx_id, requester, accepter, code="active"):
            return {
                "VpcPeeringConnectionId": pcx_id,
                "RequesterVpcInfo": {"VpcId": requester},
                "AccepterVpcInfo": {"VpcId": accepter},
                "Status": {"Code": code},
            }

        # endpoint ignoring the accepter filter
        mock_ec2_client.describe_vpc_peering_connections.side_effect = [
            {
                "VpcPeeringConnections": [
                    _pcx("pcx-1", "vpc-a", "vpc-b"),
                    _pcx("pcx-2", "vpc-a", "vpc-c"),
                    _pcx("pcx-3", "vpc-a", "vpc-b", "rejected"),
                ]
            },
            {"VpcPeeringConnections": [_pcx("pcx-4", "vpc-c", "vpc-a")]},
        ]
        assert [c["VpcPeeringConnectionId"] for c in mock_vpc_manager.find_peering_connections("vpc-a", "vpc-b")] == ["pcx-1"]

        mock_ec2_client.describe_vpc_peering_connections.side_effect = [
            {"VpcPeeringConnections": [_pcx("pcx-1", "vpc-a", "vpc-b"), _pcx("pcx-3", "vpc-a", "vpc-b", "rejected")]},
            {"VpcPeeringConnections": []},
        ]
        connections = mock_vpc_manager.find_peering_connections("vpc-a", "vpc-b", live_only=False)
        assert [c["VpcPeeringConnectionId"] for c in connections] == ["pcx-1", "pcx-3"]

    def test_create_security_group_returns_group_id(self, mock_vpc_manager, mock_ec2_client):
        mock_ec2_client.create_security_group.return_value = {"GroupId": "sg-123"}
        assert mock_vpc_manager.create_security_group(TOPOLOGY, "sg", "vpc-1", "desc") == "sg-123"
        assert not mock_ec2_client.describe_security_groups.called
