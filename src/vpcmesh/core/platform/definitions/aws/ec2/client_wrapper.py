# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

import boto3
import shortuuid
from botocore.exceptions import ClientError

from vpcmesh.core.topology.errors import DependencyViolationError, ProviderRejected

from ..common import exponential_retry, get_code_for_exception, get_message_for_exception, is_not_found

module_logger = logging.getLogger(__name__)

NAME_TAG_KEY = "Name"
TOPOLOGY_TAG_KEY = "vpcmesh:topology"

ANY_IPV4_CIDR = "0.0.0.0/0"

# instance states that still hold (or will hold) the network interface in the subnet
LIVE_INSTANCE_STATES = ["pending", "running", "stopping", "stopped"]
# peering connection codes that may still turn (or already are) 'active'
LIVE_PEERING_CODES = ["initiating-request", "pending-acceptance", "provisioning", "active"]


def build_tag_specification(resource_type: str, name: str, topology_name: str) -> List[Dict[str, Any]]:
    """Tags are applied at creation so that a resource is never observable untagged (and thus invisible to re-runs)."""
    return [
        {
            "ResourceType": resource_type,
            "Tags": [{"Key": NAME_TAG_KEY, "Value": name}, {"Key": TOPOLOGY_TAG_KEY, "Value": topology_name}],
        }
    ]


def get_tags(resource: Dict[str, Any]) -> Dict[str, str]:
    return {tag["Key"]: tag["Value"] for tag in resource.get("Tags", [])}


def build_ip_permission(protocol: str, from_port: int, to_port: int, cidr: str, description: str) -> Dict[str, Any]:
    return {
        "IpProtocol": protocol,
        "FromPort": from_port,
        "ToPort": to_port,
        "IpRanges": [{"CidrIp": cidr, "Description": description}],
    }


def permission_key(permission: Dict[str, Any]) -> tuple:
    """Normalized (protocol, from, to, frozenset(cidrs)) so that rules can be compared regardless of descriptions."""
    protocol = str(permission.get("IpProtocol"))
    if protocol == "-1":
        from_port, to_port = None, None
    else:
        from_port, to_port = permission.get("FromPort"), permission.get("ToPort")
    return protocol, from_port, to_port, frozenset(r["CidrIp"] for r in permission.get("IpRanges", []))


def missing_permissions(existing: Sequence[Dict[str, Any]], desired: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    existing_keys = set()
    for permission in existing:
        protocol, from_port, to_port, cidrs = permission_key(permission)
        for cidr in cidrs:
            existing_keys.add((protocol, from_port, to_port, cidr))
    missing = []
    for permission in desired:
        protocol, from_port, to_port, cidrs = permission_key(permission)
        if any((protocol, from_port, to_port, cidr) not in existing_keys for cidr in cidrs):
            missing.append(permission)
    return missing


class VPCManager:
    """Region scoped control-plane client for the resources of a peering topology.

    Every call goes through `exponential_retry`. Provider errors that are not retryable surface as
    :class:`ProviderRejected` (or :class:`DependencyViolationError` for 'DependencyViolation') carrying the resource
    kind and key, so callers never need to deal with raw botocore errors. NotFound errors on delete calls are treated
    as "already deleted".
    """

    CLIENT_RETRYABLE_ERRORS = {"RequestLimitExceeded", "ServiceUnavailable"}

    def __init__(self, session: boto3.Session, region: str):
        self._session = session
        self._region = region
        self._ec2_client = session.client("ec2", region_name=region)

    @property
    def region(self) -> str:
        return self._region

    @property
    def client(self):
        return self._ec2_client

    def _call(self, kind: str, key: str, func, retryable_errors: Iterable[str] = (), **kwargs):
        try:
            return exponential_retry(func, set(self.CLIENT_RETRYABLE_ERRORS) | set(retryable_errors), **kwargs)
        except ClientError as error:
            error_code = get_code_for_exception(error)
            if error_code == "DependencyViolation":
                raise DependencyViolationError(
                    f"{kind} {key} in {self._region} still has dependencies: {get_message_for_exception(error)}", kind, key, cause=error
                ) from error
            raise ProviderRejected(kind, f"{self._region}/{key}", error_code, get_message_for_exception(error), cause=error) from error

    def _delete(self, kind: str, key: str, func, retryable_errors: Iterable[str] = (), **kwargs) -> bool:
        """Returns False if the resource was already gone."""
        try:
            self._call(kind, key, func, retryable_errors, **kwargs)
        except ProviderRejected as error:
            if is_not_found(error.cause):
                module_logger.info(f"{kind} {key} in {self._region} already deleted")
                return False
            raise
        return True

    # Lookups
    # -------
    def get_available_azs(self) -> List[str]:
        """Get available AZs in the region (order is provider defined and can change between calls)."""
        response = self._call(
            "availability-zone", self._region, self._ec2_client.describe_availability_zones, Filters=[{"Name": "state", "Values": ["available"]}]
        )
        return [az["ZoneName"] for az in response["AvailabilityZones"]]

    def find_latest_image(self, owner: str, name_pattern: str, architecture: str) -> Optional[str]:
        response = self._call(
            "image",
            name_pattern,
            self._ec2_client.describe_images,
            Owners=[owner],
            Filters=[
                {"Name": "name", "Values": [name_pattern]},
                {"Name": "architecture", "Values": [architecture]},
                {"Name": "state", "Values": ["available"]},
            ],
        )
        images = sorted(response.get("Images", []), key=lambda image: image.get("CreationDate", ""), reverse=True)
        if not images:
            return None
        module_logger.info(f"Selected image {images[0]['ImageId']} ({images[0].get('Name')}) in {self._region}")
        return images[0]["ImageId"]

    # VPC
    # ---
    def find_vpc(self, topology_name: str, name: str) -> Optional[Dict[str, Any]]:
        response = self._call(
            "vpc",
            name,
            self._ec2_client.describe_vpcs,
            Filters=[{"Name": f"tag:{NAME_TAG_KEY}", "Values": [name]}, {"Name": f"tag:{TOPOLOGY_TAG_KEY}", "Values": [topology_name]}],
        )
        vpcs = response["Vpcs"]
        if len(vpcs) > 1:
            all_vpc_ids = [vpc["VpcId"] for vpc in vpcs]
            module_logger.warning(f"Found {len(vpcs)} VPCs with name {name!r} in {self._region}: {all_vpc_ids}, using the first one")
        return vpcs[0] if vpcs else None

    def describe_vpc(self, vpc_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self._call("vpc", vpc_id, self._ec2_client.describe_vpcs, VpcIds=[vpc_id])
        except ProviderRejected as error:
            if is_not_found(error.cause):
                return None
            raise
        return response["Vpcs"][0] if response["Vpcs"] else None

    def create_vpc(self, topology_name: str, name: str, cidr_block: str) -> Dict[str, Any]:
        """Create VPC with DNS support."""
        try:
            vpc = self._call(
                "vpc",
                name,
                self._ec2_client.create_vpc,
                CidrBlock=cidr_block,
                TagSpecifications=build_tag_specification("vpc", name, topology_name),
            )["Vpc"]
        except ProviderRejected as error:
            if error.error_code == "VpcLimitExceeded":
                module_logger.error(
                    f"VPC limit exceeded in {self._region} when creating {name!r}.\n"
                    f"RECOVERY STEPS:\n"
                    f"1. Delete unused VPCs in {self._region}\n"
                    f"2. Or request a VPC limit increase from AWS Support"
                )
            raise
        vpc_id = vpc["VpcId"]

        # freshly created ids are eventually consistent
        self._call("vpc", name, self._ec2_client.modify_vpc_attribute, {"InvalidVpcID.NotFound"}, VpcId=vpc_id, EnableDnsSupport={"Value": True})
        self._call("vpc", name, self._ec2_client.modify_vpc_attribute, {"InvalidVpcID.NotFound"}, VpcId=vpc_id, EnableDnsHostnames={"Value": True})

        module_logger.info(f"Created VPC {vpc_id} ({name}) with {cidr_block} in {self._region}")
        return vpc

    def delete_vpc(self, vpc_id: str) -> bool:
        return self._delete("vpc", vpc_id, self._ec2_client.delete_vpc, VpcId=vpc_id)

    # Subnet
    # ------
    def find_subnet(self, vpc_id: str, name: str) -> Optional[Dict[str, Any]]:
        response = self._call(
            "subnet",
            name,
            self._ec2_client.describe_subnets,
            Filters=[{"Name": "vpc-id", "Values": [vpc_id]}, {"Name": f"tag:{NAME_TAG_KEY}", "Values": [name]}],
        )
        return response["Subnets"][0] if response["Subnets"] else None

    def create_subnet(
        self, topology_name: str, name: str, vpc_id: str, cidr_block: str, availability_zone: str, map_public_ip: bool = True
    ) -> Dict[str, Any]:
        subnet = self._call(
            "subnet",
            name,
            self._ec2_client.create_subnet,
            {"InvalidVpcID.NotFound"},
            VpcId=vpc_id,
            CidrBlock=cidr_block,
            AvailabilityZone=availability_zone,
            TagSpecifications=build_tag_specification("subnet", name, topology_name),
        )["Subnet"]
        if map_public_ip:
            self._call(
                "subnet",
                name,
                self._ec2_client.modify_subnet_attribute,
                {"InvalidSubnetID.NotFound"},
                SubnetId=subnet["SubnetId"],
                MapPublicIpOnLaunch={"Value": True},
            )
        module_logger.info(f"Created subnet {subnet['SubnetId']} ({name}) with {cidr_block} in {availability_zone}")
        return subnet

    def delete_subnet(self, subnet_id: str) -> bool:
        return self._delete("subnet", subnet_id, self._ec2_client.delete_subnet, SubnetId=subnet_id)

    # Internet Gateway
    # ----------------
    def find_internet_gateway(self, vpc_id: str) -> Optional[Dict[str, Any]]:
        response = self._call(
            "internet-gateway",
            vpc_id,
            self._ec2_client.describe_internet_gateways,
            Filters=[{"Name": "attachment.vpc-id", "Values": [vpc_id]}],
        )
        return response["InternetGateways"][0] if response["InternetGateways"] else None

    def find_detached_internet_gateway(self, topology_name: str, name: str) -> Optional[Dict[str, Any]]:
        """A gateway created by a run that got interrupted before the attachment."""
        response = self._call(
            "internet-gateway",
            name,
            self._ec2_client.describe_internet_gateways,
            Filters=[{"Name": f"tag:{NAME_TAG_KEY}", "Values": [name]}, {"Name": f"tag:{TOPOLOGY_TAG_KEY}", "Values": [topology_name]}],
        )
        for igw in response["InternetGateways"]:
            if not igw.get("Attachments"):
                return igw
        return None

    def create_internet_gateway(self, topology_name: str, name: str) -> Dict[str, Any]:
        igw = self._call(
            "internet-gateway",
            name,
            self._ec2_client.create_internet_gateway,
            TagSpecifications=build_tag_specification("internet-gateway", name, topology_name),
        )["InternetGateway"]
        module_logger.info(f"Created Internet Gateway {igw['InternetGatewayId']} ({name})")
        return igw

    def attach_internet_gateway(self, igw_id: str, vpc_id: str) -> None:
        self._call(
            "internet-gateway",
            igw_id,
            self._ec2_client.attach_internet_gateway,
            {"InvalidInternetGatewayID.NotFound", "InvalidVpcID.NotFound"},
            InternetGatewayId=igw_id,
            VpcId=vpc_id,
        )
        module_logger.info(f"Attached Internet Gateway {igw_id} to {vpc_id}")

    def detach_and_delete_internet_gateway(self, igw_id: str, vpc_id: Optional[str]) -> bool:
        if vpc_id:
            try:
                self._call("internet-gateway", igw_id, self._ec2_client.detach_internet_gateway, InternetGatewayId=igw_id, VpcId=vpc_id)
            except ProviderRejected as error:
                if not (is_not_found(error.cause) or error.error_code == "Gateway.NotAttached"):
                    raise
        return self._delete("internet-gateway", igw_id, self._ec2_client.delete_internet_gateway, InternetGatewayId=igw_id)

    # Route Table
    # -----------
    def find_route_table(self, vpc_id: str, name: str) -> Optional[Dict[str, Any]]:
        response = self._call(
            "route-table",
            name,
            self._ec2_client.describe_route_tables,
            Filters=[{"Name": "vpc-id", "Values": [vpc_id]}, {"Name": f"tag:{NAME_TAG_KEY}", "Values": [name]}],
        )
        return response["RouteTables"][0] if response["RouteTables"] else None

    def describe_route_table(self, route_table_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self._call("route-table", route_table_id, self._ec2_client.describe_route_tables, RouteTableIds=[route_table_id])
        except ProviderRejected as error:
            if is_not_found(error.cause):
                return None
            raise
        return response["RouteTables"][0] if response["RouteTables"] else None

    def create_route_table(self, topology_name: str, name: str, vpc_id: str) -> Dict[str, Any]:
        route_table = self._call(
            "route-table",
            name,
            self._ec2_client.create_route_table,
            {"InvalidVpcID.NotFound"},
            VpcId=vpc_id,
            TagSpecifications=build_tag_specification("route-table", name, topology_name),
        )["RouteTable"]
        module_logger.info(f"Created route table {route_table['RouteTableId']} ({name})")
        return route_table

    def associate_route_table(self, route_table_id: str, subnet_id: str) -> str:
        response = self._call(
            "route-table-association",
            f"{route_table_id}/{subnet_id}",
            self._ec2_client.associate_route_table,
            {"InvalidRouteTableID.NotFound", "InvalidSubnetID.NotFound"},
            RouteTableId=route_table_id,
            SubnetId=subnet_id,
        )
        module_logger.info(f"Associated route table {route_table_id} with subnet {subnet_id}")
        return response["AssociationId"]

    def disassociate_route_table(self, association_id: str) -> bool:
        return self._delete("route-table-association", association_id, self._ec2_client.disassociate_route_table, AssociationId=association_id)

    def delete_route_table(self, route_table_id: str) -> bool:
        return self._delete("route-table", route_table_id, self._ec2_client.delete_route_table, RouteTableId=route_table_id)

    def create_route(
        self, route_table_id: str, destination_cidr: str, gateway_id: Optional[str] = None, peering_connection_id: Optional[str] = None
    ) -> None:
        target = {"GatewayId": gateway_id} if gateway_id else {"VpcPeeringConnectionId": peering_connection_id}
        self._call(
            "route",
            f"{route_table_id}/{destination_cidr}",
            self._ec2_client.create_route,
            {"InvalidRouteTableID.NotFound", "InvalidGatewayID.NotFound", "InvalidVpcPeeringConnectionID.NotFound"},
            RouteTableId=route_table_id,
            DestinationCidrBlock=destination_cidr,
            **target,
        )
        module_logger.info(f"Added route {destination_cidr} -> {list(target.values())[0]} to {route_table_id}")

    def replace_route(
        self, route_table_id: str, destination_cidr: str, gateway_id: Optional[str] = None, peering_connection_id: Optional[str] = None
    ) -> None:
        target = {"GatewayId": gateway_id} if gateway_id else {"VpcPeeringConnectionId": peering_connection_id}
        self._call(
            "route",
            f"{route_table_id}/{destination_cidr}",
            self._ec2_client.replace_route,
            {"InvalidGatewayID.NotFound", "InvalidVpcPeeringConnectionID.NotFound"},
            RouteTableId=route_table_id,
            DestinationCidrBlock=destination_cidr,
            **target,
        )
        module_logger.info(f"Replaced route {destination_cidr} -> {list(target.values())[0]} in {route_table_id}")

    def delete_route(self, route_table_id: str, destination_cidr: str) -> bool:
        return self._delete(
            "route",
            f"{route_table_id}/{destination_cidr}",
            self._ec2_client.delete_route,
            RouteTableId=route_table_id,
            DestinationCidrBlock=destination_cidr,
        )

    # VPC Peering
    # -----------
    def find_peering_connections(self, vpc_id: str, peer_vpc_id: str, live_only: bool = True) -> List[Dict[str, Any]]:
        """Connections between the two VPCs, in either direction (only the live ones unless `live_only` is False)."""
        connections = []
        for requester, accepter in ((vpc_id, peer_vpc_id), (peer_vpc_id, vpc_id)):
            response = self._call(
                "vpc-peering-connection",
                f"{requester}--{accepter}",
                self._ec2_client.describe_vpc_peering_connections,
                Filters=[
                    {"Name": "requester-vpc-info.vpc-id", "Values": [requester]},
                    {"Name": "accepter-vpc-info.vpc-id", "Values": [accepter]},
                ],
            )
            # filters are not honored by every endpoint, match both ends here
            connections.extend(
                pcx
                for pcx in response["VpcPeeringConnections"]
                if pcx.get("RequesterVpcInfo", {}).get("VpcId") == requester
                and pcx.get("AccepterVpcInfo", {}).get("VpcId") == accepter
                and (not live_only or pcx["Status"]["Code"] in LIVE_PEERING_CODES)
            )
        return connections

    def describe_peering_connection(self, peering_connection_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self._call(
                "vpc-peering-connection",
                peering_connection_id,
                self._ec2_client.describe_vpc_peering_connections,
                VpcPeeringConnectionIds=[peering_connection_id],
            )
        except ProviderRejected as error:
            if is_not_found(error.cause):
                return None
            raise
        connections = response["VpcPeeringConnections"]
        return connections[0] if connections else None

    def create_peering_connection(self, topology_name: str, name: str, vpc_id: str, peer_vpc_id: str, peer_region: str) -> Dict[str, Any]:
        pcx = self._call(
            "vpc-peering-connection",
            name,
            self._ec2_client.create_vpc_peering_connection,
            {"InvalidVpcID.NotFound"},
            VpcId=vpc_id,
            PeerVpcId=peer_vpc_id,
            PeerRegion=peer_region,
            TagSpecifications=build_tag_specification("vpc-peering-connection", name, topology_name),
        )["VpcPeeringConnection"]
        module_logger.info(f"Requested peering connection {pcx['VpcPeeringConnectionId']} ({name}) {vpc_id} -> {peer_vpc_id}@{peer_region}")
        return pcx

    def accept_peering_connection(self, peering_connection_id: str) -> Dict[str, Any]:
        # request might not have propagated to the accepter region yet
        pcx = self._call(
            "vpc-peering-connection",
            peering_connection_id,
            self._ec2_client.accept_vpc_peering_connection,
            {"InvalidVpcPeeringConnectionID.NotFound"},
            VpcPeeringConnectionId=peering_connection_id,
        )["VpcPeeringConnection"]
        module_logger.info(f"Accepted peering connection {peering_connection_id} in {self._region}")
        return pcx

    def delete_peering_connection(self, peering_connection_id: str) -> bool:
        return self._delete(
            "vpc-peering-connection",
            peering_connection_id,
            self._ec2_client.delete_vpc_peering_connection,
            VpcPeeringConnectionId=peering_connection_id,
        )

    # Security Group
    # --------------
    def find_security_group(self, vpc_id: str, group_name: str) -> Optional[Dict[str, Any]]:
        response = self._call(
            "security-group",
            group_name,
            self._ec2_client.describe_security_groups,
            Filters=[{"Name": "vpc-id", "Values": [vpc_id]}, {"Name": "group-name", "Values": [group_name]}],
        )
        return response["SecurityGroups"][0] if response["SecurityGroups"] else None

    def create_security_group(self, topology_name: str, group_name: str, vpc_id: str, description: str) -> str:
        group_id = self._call(
            "security-group",
            group_name,
            self._ec2_client.create_security_group,
            {"InvalidVpcID.NotFound"},
            GroupName=group_name,
            Description=description,
            VpcId=vpc_id,
            TagSpecifications=build_tag_specification("security-group", group_name, topology_name),
        )["GroupId"]
        module_logger.info(f"Created security group {group_id} ({group_name}) in {vpc_id}")
        return group_id

    def _authorize(self, func, group_id: str, permissions: List[Dict[str, Any]]) -> None:
        if not permissions:
            return
        try:
            self._call("security-group", group_id, func, {"InvalidGroup.NotFound"}, GroupId=group_id, IpPermissions=permissions)
        except ProviderRejected as error:
            # a concurrent/previous run authorized (part of) the same rules
            if error.error_code != "InvalidPermission.Duplicate":
                raise
            for permission in permissions:
                self._authorize_one(func, group_id, permission)

    def _authorize_one(self, func, group_id: str, permission: Dict[str, Any]) -> None:
        try:
            self._call("security-group", group_id, func, {"InvalidGroup.NotFound"}, GroupId=group_id, IpPermissions=[permission])
        except ProviderRejected as error:
            if error.error_code != "InvalidPermission.Duplicate":
                raise

    def authorize_ingress(self, group_id: str, permissions: List[Dict[str, Any]]) -> None:
        self._authorize(self._ec2_client.authorize_security_group_ingress, group_id, permissions)

    def authorize_egress(self, group_id: str, permissions: List[Dict[str, Any]]) -> None:
        self._authorize(self._ec2_client.authorize_security_group_egress, group_id, permissions)

    def delete_security_group(self, group_id: str) -> bool:
        return self._delete("security-group", group_id, self._ec2_client.delete_security_group, GroupId=group_id)

    # Instance
    # --------
    def find_instances(self, topology_name: str, name: str, states: Sequence[str] = tuple(LIVE_INSTANCE_STATES)) -> List[Dict[str, Any]]:
        response = self._call(
            "instance",
            name,
            self._ec2_client.describe_instances,
            Filters=[
                {"Name": f"tag:{NAME_TAG_KEY}", "Values": [name]},
                {"Name": f"tag:{TOPOLOGY_TAG_KEY}", "Values": [topology_name]},
                {"Name": "instance-state-name", "Values": list(states)},
            ],
        )
        return [instance for reservation in response["Reservations"] for instance in reservation["Instances"]]

    def list_instances_in_vpc(self, vpc_id: str, states: Sequence[str] = tuple(LIVE_INSTANCE_STATES)) -> List[Dict[str, Any]]:
        response = self._call(
            "instance",
            vpc_id,
            self._ec2_client.describe_instances,
            Filters=[{"Name": "vpc-id", "Values": [vpc_id]}, {"Name": "instance-state-name", "Values": list(states)}],
        )
        return [instance for reservation in response["Reservations"] for instance in reservation["Instances"]]

    def describe_instance(self, instance_id: str) -> Optional[Dict[str, Any]]:
        try:
            response = self._call("instance", instance_id, self._ec2_client.describe_instances, InstanceIds=[instance_id])
        except ProviderRejected as error:
            if is_not_found(error.cause):
                return None
            raise
        instances = [instance for reservation in response["Reservations"] for instance in reservation["Instances"]]
        return instances[0] if instances else None

    def run_instance(
        self,
        topology_name: str,
        name: str,
        subnet_id: str,
        security_group_id: str,
        image_id: str,
        instance_type: str,
        user_data: str,
        key_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        kwargs = dict(
            ImageId=image_id,
            InstanceType=instance_type,
            MinCount=1,
            MaxCount=1,
            SubnetId=subnet_id,
            SecurityGroupIds=[security_group_id],
            UserData=user_data,
            # same token for every retry of this call, the provider returns the first launch instead of a new one
            ClientToken=shortuuid.uuid(),
            TagSpecifications=build_tag_specification("instance", name, topology_name),
        )
        if key_name:
            kwargs["KeyName"] = key_name
        instance = self._call("instance", name, self._ec2_client.run_instances, {"InvalidSubnetID.NotFound", "InvalidGroup.NotFound"}, **kwargs)[
            "Instances"
        ][0]
        module_logger.info(f"Launched instance {instance['InstanceId']} ({name}) of type {instance_type} from {image_id}")
        return instance

    def terminate_instance(self, instance_id: str) -> bool:
        return self._delete("instance", instance_id, self._ec2_client.terminate_instances, InstanceIds=[instance_id])
