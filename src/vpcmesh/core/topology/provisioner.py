# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

"""Converges (and tears down) a multi-region VPC peering topology.

Build order (each step gated on the readiness of what it depends on)::

    VPC -> Subnet -> Internet Gateway (attached) -> Route Table (associated, default route)
        -> Peering Connection (requested, accepted, active) -> Peering Routes
        -> Security Group -> Instance

Regions are independent until peering, so per-region work runs concurrently. Security groups only depend on
the regional network so they are converged concurrently with the peering of the pairs. An instance is launched only
once every peering connection of its VPC is active and routed. Every resource is discovered by its deterministic
name (and topology tag) before creation which makes re-runs idempotent and lets an interrupted run resume where it
left off.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from botocore.exceptions import BotoCoreError

from vpcmesh.core.platform.definitions.aws.common import AWSAccessPair, get_session
from vpcmesh.core.platform.definitions.aws.ec2.client_wrapper import (
    ANY_IPV4_CIDR,
    VPCManager,
    build_ip_permission,
    missing_permissions,
)

from .bootstrap import render_bootstrap_script
from .config import PeeringPair, TopologyConfig
from .errors import (
    ConvergenceCancelled,
    DependencyNotReadyError,
    DependencyViolationError,
    PartialConvergenceError,
    ProviderRejected,
    RouteConflictError,
    TopologyError,
)
from .hooks import HookDispatcher, LoggingHook, ProvisioningHook
from .state import (
    TEARDOWN_ORDER,
    ConvergenceResult,
    InstanceInfo,
    PeeringState,
    PeeringStatus,
    Phase,
    RegionStatus,
    ResourceKind,
    RouteInfo,
    TeardownResult,
    TopologyStatus,
    get_peering_state,
    is_live_peering,
)
from .validation import validate_topology
from .waiter import wait_until

module_logger = logging.getLogger(__name__)

ROUTE_TARGET_KEYS = ["GatewayId", "VpcPeeringConnectionId", "NatGatewayId", "TransitGatewayId", "NetworkInterfaceId", "InstanceId"]


def resource_name(topology_name: str, region: str, suffix: str) -> str:
    return f"{topology_name}-{region}-{suffix}"


def peering_name(topology_name: str, pair: PeeringPair) -> str:
    return f"{topology_name}-{pair.name}-pcx"


def _route_target(route: Dict) -> Optional[str]:
    for key in ROUTE_TARGET_KEYS:
        if route.get(key):
            return route[key]
    return None


def _instance_info(instance: Dict) -> InstanceInfo:
    return InstanceInfo(
        instance["InstanceId"],
        instance["State"]["Name"],
        private_ip=instance.get("PrivateIpAddress"),
        public_ip=instance.get("PublicIpAddress"),
        image_id=instance.get("ImageId"),
    )


class TopologyProvisioner:
    """Entry point for `converge`, `teardown`, `destroy` and `status` on a :class:`TopologyConfig`.

    One :class:`VPCManager` per region is used, each one possibly bound to different credentials.
    """

    def __init__(self, topology: TopologyConfig, managers: Dict[str, VPCManager], hooks: Optional[Sequence[ProvisioningHook]] = None) -> None:
        self._topology = topology
        self._managers = dict(managers)
        self._hooks = HookDispatcher(hooks if hooks is not None else [LoggingHook()])
        self._lock = threading.Lock()
        self._cancel_event = threading.Event()

    @classmethod
    def from_topology(
        cls, topology: TopologyConfig, hooks: Optional[Sequence[ProvisioningHook]] = None, access_pair: Optional[AWSAccessPair] = None
    ) -> "TopologyProvisioner":
        managers = {}
        for region_conf in topology.regions:
            session = get_session(region_conf.region, region_conf.profile, access_pair=access_pair, role_arn=region_conf.role_arn)
            managers[region_conf.region] = VPCManager(session, region_conf.region)
        return cls(topology, managers, hooks)

    @property
    def topology(self) -> TopologyConfig:
        return self._topology

    def manager(self, region: str) -> VPCManager:
        return self._managers[region]

    def cancel(self) -> None:
        """Stop an ongoing `converge` as soon as the current control-plane calls complete."""
        module_logger.warning(f"Cancellation requested for topology {self._topology.name!r}")
        self._cancel_event.set()

    def _check_cancelled(self, kind: str, key: str) -> None:
        if self._cancel_event.is_set():
            raise ConvergenceCancelled(f"Convergence of topology {self._topology.name!r} cancelled", kind, key)

    def _name(self, region: str, suffix: str) -> str:
        return resource_name(self._topology.name, region, suffix)

    def _max_workers(self, unit_count: int) -> int:
        return max(1, min(self._topology.max_workers or unit_count, unit_count))

    def _run_units(self, units: List[Tuple[str, Callable[[], None]]]) -> List[TopologyError]:
        """Run independent units concurrently, collecting (not raising) their errors."""
        if not units:
            return []
        failures: List[TopologyError] = []
        with ThreadPoolExecutor(max_workers=self._max_workers(len(units))) as executor:
            futures = {executor.submit(unit): key for key, unit in units}
            for future in as_completed(futures):
                try:
                    future.result()
                except TopologyError as error:
                    module_logger.error(f"Unit {futures[future]!r} failed: {error}")
                    failures.append(error)
                except BotoCoreError as error:
                    module_logger.error(f"Unit {futures[future]!r} failed: {error!r}")
                    failures.append(TopologyError(f"Control-plane call failed: {error}", key=futures[future], cause=error))
        return failures

    def _record(self, result: ConvergenceResult, kind: ResourceKind, key: str, resource_id: str, created: bool) -> None:
        with self._lock:
            result.record(kind, key, resource_id)
        if created:
            self._hooks.resource_created(kind, key, resource_id)

    # Converge
    # --------
    def converge(self, until: Phase = Phase.INSTANCES) -> ConvergenceResult:
        """Make the live state match the topology, creating only what is missing.

        Phases up to (and including) `until` are run. Raises :class:`ValidationError` before any mutating call if the
        topology is invalid. If some units fail while others succeed a :class:`PartialConvergenceError` carrying the
        realized identifiers is raised, if nothing could be realized the error of the first failing unit is raised.
        """
        validate_topology(self._topology)
        until = Phase(until)
        self._cancel_event.clear()
        result = ConvergenceResult(self._topology.name)
        module_logger.info(f"Converging topology {self._topology.name!r} {self._topology.region_names} until {until.name}")

        networks: Dict[str, RegionStatus] = {}
        units = [(region, self._network_unit(region, result, networks)) for region in self._topology.region_names]
        failures = self._run_units(units)

        connected_pairs: Set[str] = set()
        units = []
        if until >= Phase.PEERING:
            for pair in self._topology.pairs():
                if pair.requester in networks and pair.accepter in networks:
                    units.append((pair.name, self._peering_unit(pair, result, networks, until, connected_pairs)))
                else:
                    module_logger.warning(f"Skipping peering {pair.name} since the network of one of its regions is not ready")
        if until >= Phase.SECURITY_GROUPS:
            for region, network in networks.items():
                units.append((region, self._security_group_unit(region, result, network)))
        failures.extend(self._run_units(units))

        units = []
        if until >= Phase.INSTANCES:
            for region, network in networks.items():
                # instances must not boot before every peering of their VPC is active and routed
                blocking = [pair.name for pair in self._topology.pairs_of(region) if pair.name not in connected_pairs]
                if not network.security_group_id or blocking:
                    module_logger.warning(
                        f"Skipping instance of {region}, security group: {network.security_group_id}, pending peerings: {blocking}"
                    )
                    continue
                units.append((region, self._instance_unit(region, result, network)))
        failures.extend(self._run_units(units))

        if failures:
            if result.is_empty():
                raise failures[0]
            raise PartialConvergenceError(result, failures)

        module_logger.info(f"Topology {self._topology.name!r} converged until {until.name}")
        return result

    def _network_unit(self, region: str, result: ConvergenceResult, networks: Dict[str, RegionStatus]) -> Callable[[], None]:
        def _run() -> None:
            network = self._converge_region_network(region, result)
            with self._lock:
                networks[region] = network

        return _run

    def _peering_unit(
        self, pair: PeeringPair, result: ConvergenceResult, networks: Dict[str, RegionStatus], until: Phase, connected_pairs: Set[str]
    ) -> Callable[[], None]:
        def _run() -> None:
            connection_id = self._converge_peering(pair, result, networks)
            if until >= Phase.PEERING_ROUTES:
                self._converge_peering_routes(pair, connection_id, result, networks)
                with self._lock:
                    connected_pairs.add(pair.name)

        return _run

    def _security_group_unit(self, region: str, result: ConvergenceResult, network: RegionStatus) -> Callable[[], None]:
        def _run() -> None:
            self._converge_security_group(region, result, network)

        return _run

    def _instance_unit(self, region: str, result: ConvergenceResult, network: RegionStatus) -> Callable[[], None]:
        def _run() -> None:
            self._converge_instance(region, result, network, network.security_group_id)

        return _run

    def _converge_region_network(self, region: str, result: ConvergenceResult) -> RegionStatus:
        manager = self._managers[region]
        region_conf = self._topology.region(region)
        network = RegionStatus(region)
        topology_name = self._topology.name

        # VPC
        self._check_cancelled(ResourceKind.VPC.value, region)
        vpc_name = self._name(region, "vpc")
        vpc = manager.find_vpc(topology_name, vpc_name)
        created = vpc is None
        if created:
            vpc = manager.create_vpc(topology_name, vpc_name, region_conf.vpc_cidr)
        elif vpc["CidrBlock"] != region_conf.vpc_cidr:
            raise TopologyError(
                f"Existing VPC {vpc['VpcId']} ({vpc_name}) has CIDR {vpc['CidrBlock']} but {region_conf.vpc_cidr} is declared",
                ResourceKind.VPC.value,
                region,
            )
        network.vpc_id = vpc["VpcId"]
        wait_until(
            lambda: (manager.describe_vpc(network.vpc_id) or {}).get("State") == "available",
            ResourceKind.VPC.value,
            region,
            f"VPC {network.vpc_id} to become available",
            self._topology.wait,
            self._cancel_event,
            observe=lambda: (manager.describe_vpc(network.vpc_id) or {}).get("State", "absent"),
        )
        self._record(result, ResourceKind.VPC, region, network.vpc_id, created)

        # Subnet
        self._check_cancelled(ResourceKind.SUBNET.value, region)
        subnet_name = self._name(region, "subnet")
        subnet = manager.find_subnet(network.vpc_id, subnet_name)
        created = subnet is None
        if created:
            azs = sorted(manager.get_available_azs())
            if not azs:
                raise DependencyNotReadyError(f"No available AZ in {region}", ResourceKind.SUBNET.value, region, waited_secs=0)
            subnet = manager.create_subnet(
                topology_name,
                subnet_name,
                network.vpc_id,
                region_conf.subnet_cidr,
                azs[0],
                map_public_ip=self._topology.instance_for(region).associate_public_ip,
            )
        network.subnet_id = subnet["SubnetId"]
        network.availability_zone = subnet.get("AvailabilityZone")
        self._record(result, ResourceKind.SUBNET, region, network.subnet_id, created)

        # Internet Gateway
        self._check_cancelled(ResourceKind.INTERNET_GATEWAY.value, region)
        igw_name = self._name(region, "igw")
        igw = manager.find_internet_gateway(network.vpc_id)
        created = False
        if igw is None:
            igw = manager.find_detached_internet_gateway(topology_name, igw_name)
            if igw is None:
                igw = manager.create_internet_gateway(topology_name, igw_name)
                created = True
            manager.attach_internet_gateway(igw["InternetGatewayId"], network.vpc_id)
        network.internet_gateway_id = igw["InternetGatewayId"]
        self._record(result, ResourceKind.INTERNET_GATEWAY, region, network.internet_gateway_id, created)

        # Route Table
        self._check_cancelled(ResourceKind.ROUTE_TABLE.value, region)
        rt_name = self._name(region, "rt")
        route_table = manager.find_route_table(network.vpc_id, rt_name)
        created = route_table is None
        if created:
            route_table = manager.create_route_table(topology_name, rt_name, network.vpc_id)
        network.route_table_id = route_table["RouteTableId"]
        self._record(result, ResourceKind.ROUTE_TABLE, region, network.route_table_id, created)

        association_id = None
        for association in route_table.get("Associations", []):
            if association.get("SubnetId") == network.subnet_id:
                association_id = association["RouteTableAssociationId"]
        created = association_id is None
        if created:
            association_id = manager.associate_route_table(network.route_table_id, network.subnet_id)
        network.route_table_association_id = association_id
        self._record(result, ResourceKind.ROUTE_TABLE_ASSOCIATION, region, association_id, created)

        self._ensure_route(region, network.route_table_id, ANY_IPV4_CIDR, gateway_id=network.internet_gateway_id)
        network.has_default_route = True
        return network

    def _ensure_route(
        self, region: str, route_table_id: str, destination_cidr: str, gateway_id: Optional[str] = None, peering_connection_id: Optional[str] = None
    ) -> bool:
        """Returns True if the route had to be created (or repaired)."""
        manager = self._managers[region]
        target = gateway_id or peering_connection_id
        route_table = manager.describe_route_table(route_table_id)
        if route_table is None:
            raise DependencyNotReadyError(f"Route table {route_table_id} is gone", ResourceKind.ROUTE_TABLE.value, region, waited_secs=0)

        existing = None
        for route in route_table.get("Routes", []):
            if route.get("DestinationCidrBlock") == destination_cidr:
                existing = route
        if existing is None:
            manager.create_route(route_table_id, destination_cidr, gateway_id=gateway_id, peering_connection_id=peering_connection_id)
            return True
        if _route_target(existing) == target and existing.get("State", "active") == "active":
            return False
        if existing.get("State") == "blackhole":
            module_logger.warning(f"Replacing blackhole route {destination_cidr} -> {_route_target(existing)} in {route_table_id}")
            manager.replace_route(route_table_id, destination_cidr, gateway_id=gateway_id, peering_connection_id=peering_connection_id)
            return True
        raise RouteConflictError(
            f"{destination_cidr} is already routed to {_route_target(existing)} in {route_table_id}, expected {target}",
            ResourceKind.ROUTE.value,
            f"{region}:{destination_cidr}",
        )

    def _pick_connection(self, pair: PeeringPair, connections: List[Dict]) -> Optional[Dict]:
        if not connections:
            return None
        ordered = sorted(connections, key=lambda pcx: 0 if pcx["Status"]["Code"] == "active" else 1)
        if len(ordered) > 1:
            module_logger.warning(
                f"Found {len(ordered)} live peering connections for {pair.name}: "
                f"{[pcx['VpcPeeringConnectionId'] for pcx in ordered]}, using {ordered[0]['VpcPeeringConnectionId']}"
            )
        return ordered[0]

    def _converge_peering(self, pair: PeeringPair, result: ConvergenceResult, networks: Dict[str, RegionStatus]) -> str:
        """Drives the connection of the pair through 'absent -> pending-acceptance -> active'.

        Failed, rejected, expired and deleted connections are ignored during discovery (so a new one gets requested).
        Acceptance is done from the accepter side and only when the provider reports 'pending-acceptance'.
        """
        requester_manager = self._managers[pair.requester]
        requester_vpc_id = networks[pair.requester].vpc_id
        accepter_vpc_id = networks[pair.accepter].vpc_id
        kind = ResourceKind.PEERING_CONNECTION

        self._check_cancelled(kind.value, pair.name)
        pcx = self._pick_connection(pair, requester_manager.find_peering_connections(requester_vpc_id, accepter_vpc_id))
        created = pcx is None
        if created:
            pcx = requester_manager.create_peering_connection(
                self._topology.name, peering_name(self._topology.name, pair), requester_vpc_id, accepter_vpc_id, pair.accepter
            )
        connection_id = pcx["VpcPeeringConnectionId"]
        self._record(result, kind, pair.name, connection_id, created)

        # connection might have been requested from the other side
        accepter_region = pair.accepter if pcx.get("AccepterVpcInfo", {}).get("VpcId", accepter_vpc_id) == accepter_vpc_id else pair.requester
        accepter_manager = self._managers[accepter_region]

        progress = {"state": None, "accepted": False, "code": None}

        def _advance() -> bool:
            current = requester_manager.describe_peering_connection(connection_id)
            code = current["Status"]["Code"] if current else None
            progress["code"] = code
            if current is None:
                # not visible yet
                return False
            state = get_peering_state(code)
            if state != progress["state"]:
                progress["state"] = state
                self._hooks.peering_state(pair.name, connection_id, state)
            if state == PeeringState.ACTIVE:
                return True
            if state in (PeeringState.FAILED, PeeringState.DELETED):
                raise ProviderRejected(kind.value, pair.name, code, current["Status"].get("Message", f"peering connection {connection_id} is {code}"))
            if code == "pending-acceptance" and not progress["accepted"]:
                self._check_cancelled(kind.value, pair.name)
                accepter_manager.accept_peering_connection(connection_id)
                progress["accepted"] = True
            return False

        wait_until(
            _advance,
            kind.value,
            pair.name,
            f"peering connection {connection_id} ({pair.name}) to become active",
            self._topology.wait,
            self._cancel_event,
            observe=lambda: progress["code"] or "absent",
        )
        return connection_id

    def _converge_peering_routes(self, pair: PeeringPair, connection_id: str, result: ConvergenceResult, networks: Dict[str, RegionStatus]) -> None:
        """Routes are installed only after the connection is 'active', one per direction."""
        for region, peer in ((pair.requester, pair.accepter), (pair.accepter, pair.requester)):
            self._check_cancelled(ResourceKind.ROUTE.value, f"{region}:{peer}")
            route_table_id = networks[region].route_table_id
            destination_cidr = self._topology.region(peer).vpc_cidr
            created = self._ensure_route(region, route_table_id, destination_cidr, peering_connection_id=connection_id)
            with self._lock:
                result.routes.append(RouteInfo(region, route_table_id, destination_cidr, connection_id))
            self._record(result, ResourceKind.ROUTE, f"{region}:{destination_cidr}", connection_id, created)

    def _desired_ingress(self, region: str) -> List[Dict]:
        permissions = []
        for peer in self._topology.peers_of(region):
            peer_cidr = self._topology.region(peer).vpc_cidr
            permissions.append(build_ip_permission("icmp", -1, -1, peer_cidr, f"ICMP from {peer}"))
            permissions.append(build_ip_permission("tcp", 0, 65535, peer_cidr, f"TCP from {peer}"))
        permissions.append(build_ip_permission("tcp", 22, 22, self._topology.ssh_cidr, "SSH"))
        return permissions

    def _converge_security_group(self, region: str, result: ConvergenceResult, network: RegionStatus) -> str:
        manager = self._managers[region]
        self._check_cancelled(ResourceKind.SECURITY_GROUP.value, region)
        group_name = self._name(region, "sg")
        security_group = manager.find_security_group(network.vpc_id, group_name)
        created = security_group is None
        if created:
            group_id = manager.create_security_group(
                self._topology.name, group_name, network.vpc_id, f"{self._topology.name} instance in {region} (peers and SSH)"
            )
            # new group, no ingress yet (re-authorizing the default egress rule is a tolerated duplicate)
            security_group = {"GroupId": group_id, "IpPermissions": [], "IpPermissionsEgress": []}
        group_id = security_group["GroupId"]

        manager.authorize_ingress(group_id, missing_permissions(security_group.get("IpPermissions", []), self._desired_ingress(region)))
        all_traffic = {"IpProtocol": "-1", "IpRanges": [{"CidrIp": ANY_IPV4_CIDR}]}
        manager.authorize_egress(group_id, missing_permissions(security_group.get("IpPermissionsEgress", []), [all_traffic]))

        network.security_group_id = group_id
        self._record(result, ResourceKind.SECURITY_GROUP, region, group_id, created)
        return group_id

    def _resolve_image(self, region: str) -> str:
        instance_conf = self._topology.instance_for(region)
        if instance_conf.image_id:
            return instance_conf.image_id
        image_filter = instance_conf.image_filter
        image_id = self._managers[region].find_latest_image(image_filter.owner, image_filter.name_pattern, image_filter.architecture)
        if not image_id:
            raise TopologyError(f"No image matches {image_filter.name_pattern!r} (owner {image_filter.owner}) in {region}", "image", region)
        return image_id

    def _converge_instance(self, region: str, result: ConvergenceResult, network: RegionStatus, security_group_id: str) -> None:
        manager = self._managers[region]
        kind = ResourceKind.INSTANCE
        self._check_cancelled(kind.value, region)
        instance_name = self._name(region, "instance")
        instances = manager.find_instances(self._topology.name, instance_name)
        if len(instances) > 1:
            module_logger.warning(f"Found {len(instances)} instances named {instance_name!r}, using {instances[0]['InstanceId']}")
        created = not instances
        if created:
            region_conf = self._topology.region(region)
            instance = manager.run_instance(
                self._topology.name,
                instance_name,
                network.subnet_id,
                security_group_id,
                self._resolve_image(region),
                self._topology.instance_for(region).instance_type,
                render_bootstrap_script(self._topology, region_conf),
                key_name=region_conf.key_name,
            )
        else:
            instance = instances[0]
        instance_id = instance["InstanceId"]
        self._record(result, kind, region, instance_id, created)

        observed = {"state": instance["State"]["Name"]}

        def _running() -> Optional[Dict]:
            current = manager.describe_instance(instance_id)
            if current is None:
                return None
            observed["state"] = current["State"]["Name"]
            if observed["state"] == "running":
                return current
            if observed["state"] != "pending":
                raise TopologyError(f"Instance {instance_id} is {observed['state']}, it cannot become running", kind.value, region)
            return None

        running = wait_until(
            _running,
            kind.value,
            region,
            f"instance {instance_id} to be running",
            self._topology.wait,
            self._cancel_event,
            observe=lambda: observed["state"],
        )
        with self._lock:
            result.instances[region] = _instance_info(running)

    # Status
    # ------
    def status(self) -> TopologyStatus:
        """Read-only snapshot of the resources of the topology (no mutating call is made)."""
        validate_topology(self._topology)
        topology_name = self._topology.name
        status = TopologyStatus(topology_name)
        for region in self._topology.region_names:
            manager = self._managers[region]
            region_status = RegionStatus(region)
            status.regions[region] = region_status
            vpc = manager.find_vpc(topology_name, self._name(region, "vpc"))
            if vpc is None:
                continue
            region_status.vpc_id = vpc["VpcId"]

            subnet = manager.find_subnet(region_status.vpc_id, self._name(region, "subnet"))
            if subnet:
                region_status.subnet_id = subnet["SubnetId"]
                region_status.availability_zone = subnet.get("AvailabilityZone")

            igw = manager.find_internet_gateway(region_status.vpc_id)
            if igw:
                region_status.internet_gateway_id = igw["InternetGatewayId"]

            route_table = manager.find_route_table(region_status.vpc_id, self._name(region, "rt"))
            if route_table:
                region_status.route_table_id = route_table["RouteTableId"]
                for association in route_table.get("Associations", []):
                    if region_status.subnet_id and association.get("SubnetId") == region_status.subnet_id:
                        region_status.route_table_association_id = association["RouteTableAssociationId"]
                for route in route_table.get("Routes", []):
                    destination = route.get("DestinationCidrBlock")
                    if destination == ANY_IPV4_CIDR and route.get("GatewayId") == region_status.internet_gateway_id:
                        region_status.has_default_route = route.get("State", "active") == "active"
                    elif route.get("VpcPeeringConnectionId"):
                        region_status.peering_routes.append(
                            RouteInfo(region, route_table["RouteTableId"], destination, route["VpcPeeringConnectionId"], route.get("State", "active"))
                        )

            security_group = manager.find_security_group(region_status.vpc_id, self._name(region, "sg"))
            if security_group:
                region_status.security_group_id = security_group["GroupId"]

            instances = manager.find_instances(topology_name, self._name(region, "instance"))
            if instances:
                region_status.instance = _instance_info(instances[0])

        for pair in self._topology.pairs():
            peering = PeeringStatus(pair.requester, pair.accepter)
            status.peerings[pair.name] = peering
            requester_vpc_id = status.regions[pair.requester].vpc_id
            accepter_vpc_id = status.regions[pair.accepter].vpc_id
            if not requester_vpc_id or not accepter_vpc_id:
                continue
            connections = self._managers[pair.requester].find_peering_connections(requester_vpc_id, accepter_vpc_id, live_only=False)
            pcx = self._pick_connection(pair, [c for c in connections if is_live_peering(c["Status"]["Code"])])
            if pcx:
                peering.connection_id = pcx["VpcPeeringConnectionId"]
                peering.provider_code = pcx["Status"]["Code"]
            elif connections:
                # failed before deleted
                inactive = sorted(connections, key=lambda c: get_peering_state(c["Status"]["Code"]) != PeeringState.FAILED)[0]
                peering.inactive_connection_id = inactive["VpcPeeringConnectionId"]
                peering.provider_code = inactive["Status"]["Code"]

        module_logger.info(f"Status of topology {topology_name!r}: {status.summary()}")
        return status

    # Teardown
    # --------
    def teardown(self) -> TeardownResult:
        """Delete everything `status` reports, in strict reverse dependency order.

        Each stage waits for its deletions to be effective before the next one starts. Resources that are already gone
        are skipped so teardown can be re-run after a failure.
        """
        self._cancel_event.clear()
        status = self.status()
        result = TeardownResult(self._topology.name)
        module_logger.info(f"Tearing down topology {self._topology.name!r}: {status.summary()}")
        if status.is_empty():
            module_logger.info(f"Nothing to tear down for topology {self._topology.name!r}")
            return result

        regions = list(status.regions.values())
        stages = [
            [(r.region, self._terminate_unit(r, result)) for r in regions if r.instance],
            [(r.region, self._delete_security_group_unit(r, result)) for r in regions if r.security_group_id],
            [(r.region, self._delete_routes_unit(r, result)) for r in regions if r.peering_routes],
            [(name, self._delete_peering_unit(name, p, result)) for name, p in status.peerings.items() if p.connection_id],
            [(r.region, self._delete_network_unit(r, result)) for r in regions if r.vpc_id],
        ]
        for units in stages:
            failures = self._run_units(units)
            if failures:
                for failure in failures[1:]:
                    module_logger.error(f"Teardown failure: {failure}")
                raise failures[0]

        module_logger.info(f"Topology {self._topology.name!r} torn down")
        return result

    def _deleted(self, result: TeardownResult, kind: ResourceKind, key: str, resource_id: str, deleted: bool) -> None:
        if deleted:
            with self._lock:
                result.record(kind, resource_id)
            self._hooks.resource_deleted(kind, key, resource_id)

    def _delete_when_released(self, kind: ResourceKind, key: str, delete: Callable[[], bool]) -> bool:
        """Retry `delete` while the provider reports lingering dependents (e.g network interfaces being released)."""
        outcome = {"deleted": False, "violation": None}

        def _attempt() -> bool:
            try:
                outcome["deleted"] = delete()
            except DependencyViolationError as error:
                outcome["violation"] = error
                return False
            return True

        try:
            wait_until(_attempt, kind.value, key, f"{kind.value} {key} to be released", self._topology.wait, self._cancel_event)
        except DependencyNotReadyError:
            if outcome["violation"] is not None:
                raise outcome["violation"]
            raise
        return outcome["deleted"]

    def _terminate_unit(self, region_status: RegionStatus, result: TeardownResult) -> Callable[[], None]:
        def _run() -> None:
            manager = self._managers[region_status.region]
            instance_id = region_status.instance.instance_id
            deleted = manager.terminate_instance(instance_id)
            wait_until(
                lambda: (manager.describe_instance(instance_id) or {"State": {"Name": "terminated"}})["State"]["Name"] == "terminated",
                ResourceKind.INSTANCE.value,
                region_status.region,
                f"instance {instance_id} to be terminated",
                self._topology.wait,
                self._cancel_event,
            )
            self._deleted(result, ResourceKind.INSTANCE, region_status.region, instance_id, deleted)

        return _run

    def _delete_security_group_unit(self, region_status: RegionStatus, result: TeardownResult) -> Callable[[], None]:
        def _run() -> None:
            manager = self._managers[region_status.region]
            group_id = region_status.security_group_id
            deleted = self._delete_when_released(ResourceKind.SECURITY_GROUP, region_status.region, lambda: manager.delete_security_group(group_id))
            self._deleted(result, ResourceKind.SECURITY_GROUP, region_status.region, group_id, deleted)

        return _run

    def _delete_routes_unit(self, region_status: RegionStatus, result: TeardownResult) -> Callable[[], None]:
        def _run() -> None:
            manager = self._managers[region_status.region]
            for route in region_status.peering_routes:
                deleted = manager.delete_route(route.route_table_id, route.destination_cidr)
                self._deleted(result, ResourceKind.ROUTE, f"{region_status.region}:{route.destination_cidr}", route.peering_connection_id, deleted)

        return _run

    def _delete_peering_unit(self, pair_name: str, peering: PeeringStatus, result: TeardownResult) -> Callable[[], None]:
        def _run() -> None:
            manager = self._managers[peering.requester]
            connection_id = peering.connection_id
            deleted = manager.delete_peering_connection(connection_id)
            wait_until(
                lambda: not is_live_peering((manager.describe_peering_connection(connection_id) or {}).get("Status", {}).get("Code")),
                ResourceKind.PEERING_CONNECTION.value,
                pair_name,
                f"peering connection {connection_id} to be deleted",
                self._topology.wait,
                self._cancel_event,
            )
            self._hooks.peering_state(pair_name, connection_id, PeeringState.DELETED)
            self._deleted(result, ResourceKind.PEERING_CONNECTION, pair_name, connection_id, deleted)

        return _run

    def _delete_network_unit(self, region_status: RegionStatus, result: TeardownResult) -> Callable[[], None]:
        def _run() -> None:
            region = region_status.region
            manager = self._managers[region]
            if region_status.route_table_association_id:
                deleted = manager.disassociate_route_table(region_status.route_table_association_id)
                self._deleted(result, ResourceKind.ROUTE_TABLE_ASSOCIATION, region, region_status.route_table_association_id, deleted)
            if region_status.route_table_id:
                deleted = manager.delete_route_table(region_status.route_table_id)
                self._deleted(result, ResourceKind.ROUTE_TABLE, region, region_status.route_table_id, deleted)
            if region_status.internet_gateway_id:
                deleted = manager.detach_and_delete_internet_gateway(region_status.internet_gateway_id, region_status.vpc_id)
                self._deleted(result, ResourceKind.INTERNET_GATEWAY, region, region_status.internet_gateway_id, deleted)
            if region_status.subnet_id:
                subnet_id = region_status.subnet_id
                deleted = self._delete_when_released(ResourceKind.SUBNET, region, lambda: manager.delete_subnet(subnet_id))
                self._deleted(result, ResourceKind.SUBNET, region, subnet_id, deleted)
            vpc_id = region_status.vpc_id
            deleted = self._delete_when_released(ResourceKind.VPC, region, lambda: manager.delete_vpc(vpc_id))
            self._deleted(result, ResourceKind.VPC, region, vpc_id, deleted)

        return _run

    # Destroy
    # -------
    def dependents_of(self, status: TopologyStatus, kind: ResourceKind, key: str) -> List[str]:
        """Identifiers of the live resources that have to be deleted before the resource `kind`/`key`.

        `key` is a region or a pair name. Every resource of a kind that comes earlier in :data:`TEARDOWN_ORDER` is a
        dependent, within the region (both regions of the pair for a peering connection). Of the peering routes, a
        connection only depends on the routes that target it.
        """
        kind = ResourceKind(kind)
        if kind == ResourceKind.PEERING_CONNECTION:
            peering = status.peerings.get(key)
            if not peering or not peering.connection_id:
                return []
            regions = [peering.requester, peering.accepter]
            routes = [
                route
                for region in regions
                for route in status.regions[region].peering_routes
                if route.peering_connection_id == peering.connection_id
            ]
        else:
            regions = [key]
            routes = status.regions[key].peering_routes

        dependents: List[str] = []
        for dependent_kind in TEARDOWN_ORDER[: TEARDOWN_ORDER.index(kind)]:
            if dependent_kind == ResourceKind.ROUTE:
                dependents.extend(f"{route.route_table_id}/{route.destination_cidr}" for route in routes)
            elif dependent_kind == ResourceKind.PEERING_CONNECTION:
                dependents.extend(
                    peering.connection_id
                    for peering in status.peerings.values()
                    if peering.connection_id and key in (peering.requester, peering.accepter)
                )
            else:
                for region in regions:
                    resource_id = status.regions[region].existing().get(dependent_kind)
                    if resource_id:
                        dependents.append(resource_id)
        return dependents

    def destroy(self, kind: ResourceKind, key: str) -> TeardownResult:
        """Delete a single resource of the topology, refusing to do so while dependents exist.

        `key` is the region for regional resources (for routes, all of the peering routes of the region) and the pair
        name (e.g 'us-east-1--us-west-2') for peering connections. Raises :class:`DependencyViolationError` listing
        the dependents, nothing is deleted in that case.
        """
        kind = ResourceKind(kind)
        status = self.status()
        result = TeardownResult(self._topology.name)
        if kind == ResourceKind.PEERING_CONNECTION:
            if key not in status.peerings:
                raise KeyError(f"{key!r} is not a peering pair of topology {self._topology.name!r}")
        elif key not in status.regions:
            raise KeyError(f"Region {key!r} is not part of topology {self._topology.name!r}")

        dependents = self.dependents_of(status, kind, key)
        region_status = status.regions.get(key)
        if kind in (ResourceKind.VPC, ResourceKind.SUBNET, ResourceKind.SECURITY_GROUP) and region_status and region_status.vpc_id:
            # instances launched into the VPC outside of this topology
            dependents.extend(
                instance["InstanceId"]
                for instance in self._managers[key].list_instances_in_vpc(region_status.vpc_id)
                if instance["InstanceId"] not in dependents
            )
        if dependents:
            raise DependencyViolationError(f"Cannot destroy {kind.value} of {key} while {dependents} exist", kind.value, key, dependents)

        if kind == ResourceKind.PEERING_CONNECTION:
            if status.peerings[key].connection_id:
                self._delete_peering_unit(key, status.peerings[key], result)()
            return result

        region_status = status.regions[key]
        manager = self._managers[key]
        if kind == ResourceKind.INSTANCE and region_status.instance:
            self._terminate_unit(region_status, result)()
        elif kind == ResourceKind.SECURITY_GROUP and region_status.security_group_id:
            self._delete_security_group_unit(region_status, result)()
        elif kind == ResourceKind.ROUTE and region_status.peering_routes:
            self._delete_routes_unit(region_status, result)()
        elif kind == ResourceKind.ROUTE_TABLE_ASSOCIATION and region_status.route_table_association_id:
            deleted = manager.disassociate_route_table(region_status.route_table_association_id)
            self._deleted(result, kind, key, region_status.route_table_association_id, deleted)
        elif kind == ResourceKind.ROUTE_TABLE and region_status.route_table_id:
            deleted = manager.delete_route_table(region_status.route_table_id)
            self._deleted(result, kind, key, region_status.route_table_id, deleted)
        elif kind == ResourceKind.INTERNET_GATEWAY and region_status.internet_gateway_id:
            deleted = manager.detach_and_delete_internet_gateway(region_status.internet_gateway_id, region_status.vpc_id)
            self._deleted(result, kind, key, region_status.internet_gateway_id, deleted)
        elif kind == ResourceKind.SUBNET and region_status.subnet_id:
            deleted = manager.delete_subnet(region_status.subnet_id)
            self._deleted(result, kind, key, region_status.subnet_id, deleted)
        elif kind == ResourceKind.VPC and region_status.vpc_id:
            deleted = manager.delete_vpc(region_status.vpc_id)
            self._deleted(result, kind, key, region_status.vpc_id, deleted)
        else:
            module_logger.info(f"No {kind.value} to destroy for {key}")
        return result
