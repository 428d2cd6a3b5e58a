# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import datetime
from enum import Enum, IntEnum, unique
from typing import Dict, List, Optional

from dateutil.tz import tzlocal

from vpcmesh.core.entity import CoreData

from .config import TopologyConfig


@unique
class ResourceKind(str, Enum):
    VPC = "vpc"
    SUBNET = "subnet"
    INTERNET_GATEWAY = "internet-gateway"
    ROUTE_TABLE = "route-table"
    ROUTE_TABLE_ASSOCIATION = "route-table-association"
    ROUTE = "route"
    PEERING_CONNECTION = "vpc-peering-connection"
    SECURITY_GROUP = "security-group"
    INSTANCE = "instance"


# strict reverse dependency order, a resource can only go once every kind before it is gone
TEARDOWN_ORDER: List[ResourceKind] = [
    ResourceKind.INSTANCE,
    ResourceKind.SECURITY_GROUP,
    ResourceKind.ROUTE,
    ResourceKind.PEERING_CONNECTION,
    ResourceKind.ROUTE_TABLE_ASSOCIATION,
    ResourceKind.ROUTE_TABLE,
    ResourceKind.INTERNET_GATEWAY,
    ResourceKind.SUBNET,
    ResourceKind.VPC,
]


@unique
class Phase(IntEnum):
    """Ordered build phases. Converging `until` a phase runs it and every phase before it."""

    REGION_NETWORK = 1
    PEERING = 2
    PEERING_ROUTES = 3
    SECURITY_GROUPS = 4
    INSTANCES = 5


@unique
class PeeringState(str, Enum):
    ABSENT = "absent"
    PENDING_ACCEPTANCE = "pending-acceptance"
    ACTIVE = "active"
    FAILED = "failed"
    DELETED = "deleted"


_PEERING_STATE_MAP: Dict[str, PeeringState] = {
    "initiating-request": PeeringState.PENDING_ACCEPTANCE,
    "pending-acceptance": PeeringState.PENDING_ACCEPTANCE,
    # accepted, on its way to 'active'
    "provisioning": PeeringState.PENDING_ACCEPTANCE,
    "active": PeeringState.ACTIVE,
    "rejected": PeeringState.FAILED,
    "failed": PeeringState.FAILED,
    "expired": PeeringState.FAILED,
    "deleting": PeeringState.DELETED,
    "deleted": PeeringState.DELETED,
}


def get_peering_state(provider_code: Optional[str]) -> PeeringState:
    if not provider_code:
        return PeeringState.ABSENT
    return _PEERING_STATE_MAP.get(provider_code, PeeringState.FAILED)


def is_live_peering(provider_code: Optional[str]) -> bool:
    return get_peering_state(provider_code) in (PeeringState.PENDING_ACCEPTANCE, PeeringState.ACTIVE)


class RouteInfo(CoreData):
    def __init__(self, region: str, route_table_id: str, destination_cidr: str, peering_connection_id: str, state: str = "active") -> None:
        self.region = region
        self.route_table_id = route_table_id
        self.destination_cidr = destination_cidr
        self.peering_connection_id = peering_connection_id
        self.state = state


class InstanceInfo(CoreData):
    def __init__(
        self, instance_id: str, state: str, private_ip: Optional[str] = None, public_ip: Optional[str] = None, image_id: Optional[str] = None
    ) -> None:
        self.instance_id = instance_id
        self.state = state
        self.private_ip = private_ip
        self.public_ip = public_ip
        self.image_id = image_id


class RegionStatus(CoreData):
    def __init__(self, region: str) -> None:
        self.region = region
        self.vpc_id: Optional[str] = None
        self.subnet_id: Optional[str] = None
        self.availability_zone: Optional[str] = None
        self.internet_gateway_id: Optional[str] = None
        self.route_table_id: Optional[str] = None
        self.route_table_association_id: Optional[str] = None
        self.has_default_route = False
        self.security_group_id: Optional[str] = None
        self.instance: Optional[InstanceInfo] = None
        self.peering_routes: List[RouteInfo] = []

    def existing(self) -> Dict[ResourceKind, str]:
        existing = {
            ResourceKind.VPC: self.vpc_id,
            ResourceKind.SUBNET: self.subnet_id,
            ResourceKind.INTERNET_GATEWAY: self.internet_gateway_id,
            ResourceKind.ROUTE_TABLE: self.route_table_id,
            ResourceKind.ROUTE_TABLE_ASSOCIATION: self.route_table_association_id,
            ResourceKind.SECURITY_GROUP: self.security_group_id,
            ResourceKind.INSTANCE: self.instance.instance_id if self.instance else None,
        }
        return {kind: resource_id for kind, resource_id in existing.items() if resource_id}


class PeeringStatus(CoreData):
    """`connection_id` is only set for a live connection. Without one, `provider_code` and `inactive_connection_id`
    describe the last failed or deleted connection between the two VPCs, if any.
    """

    def __init__(
        self,
        requester: str,
        accepter: str,
        connection_id: Optional[str] = None,
        provider_code: Optional[str] = None,
        inactive_connection_id: Optional[str] = None,
    ) -> None:
        self.requester = requester
        self.accepter = accepter
        self.connection_id = connection_id
        self.provider_code = provider_code
        self.inactive_connection_id = inactive_connection_id

    @property
    def state(self) -> PeeringState:
        return get_peering_state(self.provider_code)


class TopologyStatus(CoreData):
    """Read-only snapshot of what exists for a topology."""

    def __init__(self, topology_name: str, observed_at: Optional[datetime.datetime] = None) -> None:
        self.topology_name = topology_name
        self.observed_at = observed_at or datetime.datetime.now(tzlocal())
        self.regions: Dict[str, RegionStatus] = {}
        self.peerings: Dict[str, PeeringStatus] = {}

    def _count(self, kind: ResourceKind) -> int:
        return sum(1 for region_status in self.regions.values() if kind in region_status.existing())

    @property
    def vpc_count(self) -> int:
        return self._count(ResourceKind.VPC)

    @property
    def subnet_count(self) -> int:
        return self._count(ResourceKind.SUBNET)

    @property
    def internet_gateway_count(self) -> int:
        return self._count(ResourceKind.INTERNET_GATEWAY)

    @property
    def route_table_count(self) -> int:
        return self._count(ResourceKind.ROUTE_TABLE)

    @property
    def security_group_count(self) -> int:
        return self._count(ResourceKind.SECURITY_GROUP)

    @property
    def instance_count(self) -> int:
        return self._count(ResourceKind.INSTANCE)

    @property
    def peering_connection_count(self) -> int:
        return sum(1 for peering in self.peerings.values() if peering.connection_id)

    @property
    def active_peering_count(self) -> int:
        return sum(1 for peering in self.peerings.values() if peering.state == PeeringState.ACTIVE)

    @property
    def route_count(self) -> int:
        """Number of active peering routes (default routes to internet gateways and blackholes are not counted)."""
        return sum(1 for region_status in self.regions.values() for route in region_status.peering_routes if route.state == "active")

    def summary(self) -> Dict[str, int]:
        return {
            "vpcs": self.vpc_count,
            "subnets": self.subnet_count,
            "internet_gateways": self.internet_gateway_count,
            "route_tables": self.route_table_count,
            "peering_connections": self.peering_connection_count,
            "active_peering_connections": self.active_peering_count,
            "peering_routes": self.route_count,
            "security_groups": self.security_group_count,
            "instances": self.instance_count,
        }

    def is_empty(self) -> bool:
        return not any(region_status.existing() for region_status in self.regions.values()) and self.peering_connection_count == 0

    def is_converged(self, topology: TopologyConfig) -> bool:
        n = len(topology.regions)
        pair_count = len(topology.pairs())
        return (
            self.vpc_count == n
            and self.subnet_count == n
            and self.internet_gateway_count == n
            and self.route_table_count == n
            and all(region_status.has_default_route for region_status in self.regions.values())
            and self.active_peering_count == pair_count
            and self.route_count == 2 * pair_count
            and self.security_group_count == n
            and self.instance_count == n
        )


class ConvergenceResult(CoreData):
    """Identifiers realized by a (possibly partial) convergence."""

    def __init__(self, topology_name: str) -> None:
        self.topology_name = topology_name
        self.resources: Dict[ResourceKind, Dict[str, str]] = {kind: {} for kind in ResourceKind}
        self.routes: List[RouteInfo] = []
        self.instances: Dict[str, InstanceInfo] = {}

    def record(self, kind: ResourceKind, key: str, resource_id: str) -> None:
        self.resources[kind][key] = resource_id

    def is_empty(self) -> bool:
        return not any(self.resources.values()) and not self.routes

    @property
    def vpc_ids(self) -> Dict[str, str]:
        return dict(self.resources[ResourceKind.VPC])

    @property
    def peering_connection_ids(self) -> Dict[str, str]:
        return dict(self.resources[ResourceKind.PEERING_CONNECTION])

    @property
    def instance_ids(self) -> Dict[str, str]:
        return dict(self.resources[ResourceKind.INSTANCE])

    def instance_ips(self) -> Dict[str, Dict[str, Optional[str]]]:
        return {region: {"private": info.private_ip, "public": info.public_ip} for region, info in self.instances.items()}

    def connectivity_instructions(self, topology: TopologyConfig) -> List[str]:
        """Ping commands that verify every peered pair over its private addresses, in both directions."""
        instructions = []
        for pair in topology.pairs():
            for source, target in ((pair.requester, pair.accepter), (pair.accepter, pair.requester)):
                source_info = self.instances.get(source)
                target_info = self.instances.get(target)
                if not source_info or not target_info or not target_info.private_ip:
                    continue
                login = f"ssh ubuntu@{source_info.public_ip}" if source_info.public_ip else f"(on {source_info.instance_id})"
                instructions.append(f"{login} ping -c 3 {target_info.private_ip}  # {source} -> {target}")
        return instructions


class TeardownResult(CoreData):
    def __init__(self, topology_name: str) -> None:
        self.topology_name = topology_name
        self.deleted: Dict[ResourceKind, List[str]] = {kind: [] for kind in ResourceKind}

    def record(self, kind: ResourceKind, resource_id: str) -> None:
        self.deleted[kind].append(resource_id)

    def count(self, kind: ResourceKind) -> int:
        return len(self.deleted[kind])
