# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import ipaddress
import re
from itertools import combinations
from typing import Dict, List, Optional, Union

from .bootstrap import MAX_USER_DATA_SIZE
from .config import TopologyConfig, TopologyShape
from .errors import ValidationError

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

# AWS allows /16 to /28 for VPC and subnet IPv4 blocks
MIN_PREFIX_LENGTH = 16
MAX_PREFIX_LENGTH = 28

# tag values are limited to 256 chars, names are embedded in resource names like '<name>-us-east-1-vpc'
TOPOLOGY_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9-_.]{0,63}$")


def parse_cidr(cidr: str, where: str, problems: List[str]) -> Optional[IPNetwork]:
    try:
        network = ipaddress.ip_network(cidr, strict=True)
    except (TypeError, ValueError) as error:
        problems.append(f"{where} has malformed CIDR block {cidr!r} ({error})")
        return None
    if not isinstance(network, ipaddress.IPv4Network):
        problems.append(f"{where} CIDR block {cidr!r} should be IPv4")
        return None
    if not MIN_PREFIX_LENGTH <= network.prefixlen <= MAX_PREFIX_LENGTH:
        problems.append(f"{where} CIDR block {cidr!r} prefix length should be between /{MIN_PREFIX_LENGTH} and /{MAX_PREFIX_LENGTH}")
        return None
    return network


def validate_topology(topology: TopologyConfig) -> None:
    """Check the topology before any control-plane call is made.

    Collects every problem instead of stopping at the first one and raises a single :class:`ValidationError`.
    """
    problems: List[str] = []

    if not topology.name or not TOPOLOGY_NAME_PATTERN.match(topology.name):
        problems.append(f"topology name {topology.name!r} should match {TOPOLOGY_NAME_PATTERN.pattern}")

    names = topology.region_names
    if len(names) < 2:
        problems.append(f"topology needs at least 2 regions to peer, got {len(names)}")
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        problems.append(f"region(s) {duplicates} declared more than once (one VPC per region)")

    vpc_networks: Dict[str, IPNetwork] = {}
    for region_conf in topology.regions:
        vpc_network = parse_cidr(region_conf.vpc_cidr, f"VPC of {region_conf.region}", problems)
        subnet_network = parse_cidr(region_conf.subnet_cidr, f"subnet of {region_conf.region}", problems)
        if vpc_network:
            vpc_networks.setdefault(region_conf.region, vpc_network)
        if vpc_network and subnet_network and not subnet_network.subnet_of(vpc_network):
            problems.append(
                f"subnet {region_conf.subnet_cidr} of {region_conf.region} is not contained in its VPC CIDR {region_conf.vpc_cidr}"
            )

    for (region_a, network_a), (region_b, network_b) in combinations(vpc_networks.items(), 2):
        if network_a.overlaps(network_b):
            problems.append(f"VPC CIDR {network_a} of {region_a} overlaps VPC CIDR {network_b} of {region_b}")

    # duplicated region declarations end up as sibling subnets of the same VPC
    subnets_per_region: Dict[str, List[IPNetwork]] = {}
    for region_conf in topology.regions:
        subnet = parse_cidr(region_conf.subnet_cidr, f"subnet of {region_conf.region}", [])
        if subnet:
            subnets_per_region.setdefault(region_conf.region, []).append(subnet)
    for region, subnets in subnets_per_region.items():
        for subnet_a, subnet_b in combinations(subnets, 2):
            if subnet_a.overlaps(subnet_b):
                problems.append(f"subnet {subnet_a} overlaps sibling subnet {subnet_b} in {region}")

    if topology.shape == TopologyShape.HUB_AND_SPOKE:
        if not topology.hub_region:
            problems.append("hub_and_spoke topology requires a hub region")
        elif topology.hub_region not in names:
            problems.append(f"hub region {topology.hub_region!r} is not one of the topology regions {names}")

    parse_any_cidr(topology.ssh_cidr, "ssh_cidr", problems)

    for region_conf in topology.regions:
        instance = topology.instance_for(region_conf.region)
        if not instance.image_id and not instance.image_filter:
            problems.append(f"instance of {region_conf.region} needs either an image id or an image filter")
        if not instance.instance_type:
            problems.append(f"instance of {region_conf.region} needs an instance type")
        if region_conf.bootstrap_script is not None and len(region_conf.bootstrap_script.encode("utf-8")) > MAX_USER_DATA_SIZE:
            problems.append(f"bootstrap script of {region_conf.region} exceeds {MAX_USER_DATA_SIZE} bytes")

    wait = topology.wait
    wait_values = (wait.timeout_secs, wait.initial_delay_secs, wait.max_delay_secs)
    if not all(isinstance(value, (int, float)) and not isinstance(value, bool) for value in wait_values):
        problems.append(f"wait configuration should be numeric, got {wait!r}")
    elif wait.timeout_secs <= 0 or wait.initial_delay_secs <= 0 or wait.max_delay_secs < wait.initial_delay_secs:
        problems.append(f"invalid wait configuration {wait!r} (positive timeout and initial delay, max delay >= initial delay)")

    if topology.max_workers is not None and (
        not isinstance(topology.max_workers, int) or isinstance(topology.max_workers, bool) or topology.max_workers < 1
    ):
        problems.append(f"max_workers should be a positive integer, got {topology.max_workers!r}")

    if problems:
        raise ValidationError(problems)


def parse_any_cidr(cidr: str, where: str, problems: List[str]) -> Optional[IPNetwork]:
    try:
        return ipaddress.ip_network(cidr, strict=True)
    except (TypeError, ValueError) as error:
        problems.append(f"{where} has malformed CIDR block {cidr!r} ({error})")
        return None
