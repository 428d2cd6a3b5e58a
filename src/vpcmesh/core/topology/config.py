# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

"""Declarative description of a multi-region VPC peering topology.

A topology is a list of regions (one VPC + one public subnet + one instance each) and a shape that decides which
VPC pairs get peered. It is consumed read-only by the provisioner.

Example JSON document (see :func:`load_topology`)::

    {
      "name": "vpc-peering-demo",
      "shape": "full_mesh",
      "instance": {"instance_type": "t2.micro"},
      "regions": [
        {"region": "us-east-1", "vpc_cidr": "10.0.0.0/16", "subnet_cidr": "10.0.1.0/24", "key_name": "east-key"},
        {"region": "us-west-2", "vpc_cidr": "10.1.0.0/16", "subnet_cidr": "10.1.1.0/24", "key_name": "west-key"},
        {"region": "eu-west-1", "vpc_cidr": "10.2.0.0/16", "subnet_cidr": "10.2.1.0/24", "key_name": "eu-key"}
      ]
    }
"""

import json
import logging
from enum import Enum, unique
from itertools import combinations
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from vpcmesh.core.entity import CoreData

from .errors import ValidationError

module_logger = logging.getLogger(__name__)

# Canonical
UBUNTU_IMAGE_OWNER = "099720109477"
UBUNTU_2404_IMAGE_NAME_PATTERN = "ubuntu/images/hvm-ssd*/ubuntu-noble-24.04-amd64-server-*"

DEFAULT_TOPOLOGY_NAME = "vpcmesh"
DEFAULT_INSTANCE_TYPE = "t2.micro"
DEFAULT_SSH_CIDR = "0.0.0.0/0"


@unique
class TopologyShape(str, Enum):
    FULL_MESH = "full_mesh"
    HUB_AND_SPOKE = "hub_and_spoke"


class ImageFilter(CoreData):
    """Machine image selection filter. The newest image (by creation date) matching it wins."""

    def __init__(self, owner: str = UBUNTU_IMAGE_OWNER, name_pattern: str = UBUNTU_2404_IMAGE_NAME_PATTERN, architecture: str = "x86_64") -> None:
        self.owner = owner
        self.name_pattern = name_pattern
        self.architecture = architecture


class InstanceConfig(CoreData):
    def __init__(
        self,
        instance_type: str = DEFAULT_INSTANCE_TYPE,
        image_id: Optional[str] = None,
        image_filter: Optional[ImageFilter] = None,
        associate_public_ip: bool = True,
    ) -> None:
        self.instance_type = instance_type
        # explicit image id has precedence over the filter
        self.image_id = image_id
        self.image_filter = image_filter if image_filter or image_id else ImageFilter()
        self.associate_public_ip = associate_public_ip


class WaitConfig(CoreData):
    """Bounded wait (with exponential backoff) applied to every readiness predicate."""

    def __init__(self, timeout_secs: float = 600, initial_delay_secs: float = 2, max_delay_secs: float = 30) -> None:
        self.timeout_secs = timeout_secs
        self.initial_delay_secs = initial_delay_secs
        self.max_delay_secs = max_delay_secs


class RegionConfig(CoreData):
    def __init__(
        self,
        region: str,
        vpc_cidr: str,
        subnet_cidr: str,
        key_name: Optional[str] = None,
        profile: Optional[str] = None,
        role_arn: Optional[str] = None,
        instance: Optional[InstanceConfig] = None,
        bootstrap_script: Optional[str] = None,
    ) -> None:
        self.region = region
        self.vpc_cidr = vpc_cidr
        self.subnet_cidr = subnet_cidr
        self.key_name = key_name
        # credentials reference for this region (named profile and/or a role to assume)
        self.profile = profile
        self.role_arn = role_arn
        # overrides the topology-wide instance config
        self.instance = instance
        # opaque first-boot payload, default one is rendered when not provided
        self.bootstrap_script = bootstrap_script


class PeeringPair(CoreData):
    """Unordered VPC pair with a designated requester/accepter direction."""

    def __init__(self, requester: str, accepter: str) -> None:
        self.requester = requester
        self.accepter = accepter

    @property
    def name(self) -> str:
        return f"{self.requester}--{self.accepter}"

    def touches(self, region: str) -> bool:
        return region in (self.requester, self.accepter)

    def other(self, region: str) -> str:
        return self.accepter if region == self.requester else self.requester


class TopologyConfig(CoreData):
    class _Builder:
        def __init__(self) -> None:
            self._name = DEFAULT_TOPOLOGY_NAME
            self._regions: List[RegionConfig] = []
            self._instance = InstanceConfig()
            self._shape = TopologyShape.FULL_MESH
            self._hub_region: Optional[str] = None
            self._ssh_cidr = DEFAULT_SSH_CIDR
            self._wait = WaitConfig()
            self._max_workers: Optional[int] = None

        def with_name(self, name: str) -> "TopologyConfig._Builder":
            self._name = name
            return self

        def with_region(self, region: str, vpc_cidr: str, subnet_cidr: str, **kwargs) -> "TopologyConfig._Builder":
            self._regions.append(RegionConfig(region, vpc_cidr, subnet_cidr, **kwargs))
            return self

        def with_instance(self, instance: InstanceConfig) -> "TopologyConfig._Builder":
            self._instance = instance
            return self

        def with_shape(self, shape: TopologyShape, hub_region: Optional[str] = None) -> "TopologyConfig._Builder":
            self._shape = TopologyShape(shape)
            self._hub_region = hub_region
            return self

        def with_ssh_cidr(self, ssh_cidr: str) -> "TopologyConfig._Builder":
            self._ssh_cidr = ssh_cidr
            return self

        def with_wait(self, timeout_secs: float, initial_delay_secs: float = 2, max_delay_secs: float = 30) -> "TopologyConfig._Builder":
            self._wait = WaitConfig(timeout_secs, initial_delay_secs, max_delay_secs)
            return self

        def with_max_workers(self, max_workers: int) -> "TopologyConfig._Builder":
            self._max_workers = max_workers
            return self

        def build(self) -> "TopologyConfig":
            return TopologyConfig(
                self._name,
                list(self._regions),
                instance=self._instance,
                shape=self._shape,
                hub_region=self._hub_region,
                ssh_cidr=self._ssh_cidr,
                wait=self._wait,
                max_workers=self._max_workers,
            )

    @classmethod
    def builder(cls) -> "TopologyConfig._Builder":
        return TopologyConfig._Builder()

    def __init__(
        self,
        name: str,
        regions: Sequence[RegionConfig],
        instance: Optional[InstanceConfig] = None,
        shape: TopologyShape = TopologyShape.FULL_MESH,
        hub_region: Optional[str] = None,
        ssh_cidr: str = DEFAULT_SSH_CIDR,
        wait: Optional[WaitConfig] = None,
        max_workers: Optional[int] = None,
    ) -> None:
        self.name = name
        self.regions: List[RegionConfig] = list(regions)
        self.instance = instance or InstanceConfig()
        self.shape = TopologyShape(shape)
        self.hub_region = hub_region
        self.ssh_cidr = ssh_cidr
        self.wait = wait or WaitConfig()
        self.max_workers = max_workers

    @property
    def region_names(self) -> List[str]:
        return [r.region for r in self.regions]

    def region(self, region: str) -> RegionConfig:
        for region_conf in self.regions:
            if region_conf.region == region:
                return region_conf
        raise KeyError(f"Region {region!r} is not part of topology {self.name!r}")

    def instance_for(self, region: str) -> InstanceConfig:
        return self.region(region).instance or self.instance

    def pairs(self) -> List[PeeringPair]:
        """Peering pairs in deterministic (configuration) order.

        Full mesh peers every unordered pair, requester being the one that comes first in the region list.
        Hub-and-spoke peers the hub with every spoke, hub always being the requester. Peering is non-transitive so
        spokes of a hub cannot reach each other.
        """
        names = self.region_names
        if self.shape == TopologyShape.HUB_AND_SPOKE:
            return [PeeringPair(self.hub_region, spoke) for spoke in names if spoke != self.hub_region]
        return [PeeringPair(requester, accepter) for requester, accepter in combinations(names, 2)]

    def pairs_of(self, region: str) -> List[PeeringPair]:
        return [pair for pair in self.pairs() if pair.touches(region)]

    def peers_of(self, region: str) -> List[str]:
        return [pair.other(region) for pair in self.pairs_of(region)]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TopologyConfig":
        problems: List[str] = []
        _check_keys("topology", data, {"name", "regions", "instance", "shape", "hub_region", "ssh_cidr", "wait", "max_workers"}, {"regions"}, problems)
        if problems:
            raise ValidationError(problems)
        if not isinstance(data["regions"], list):
            raise ValidationError([f"regions should be a list, got {type(data['regions']).__name__}"])
        regions = []
        for i, region_data in enumerate(data["regions"]):
            _check_keys(
                f"regions[{i}]",
                region_data,
                {"region", "vpc_cidr", "subnet_cidr", "key_name", "profile", "role_arn", "instance", "bootstrap_script", "bootstrap_script_file"},
                {"region", "vpc_cidr", "subnet_cidr"},
                problems,
            )
        if problems:
            raise ValidationError(problems)

        for region_data in data["regions"]:
            region_data = dict(region_data)
            script_file = region_data.pop("bootstrap_script_file", None)
            if script_file:
                try:
                    region_data["bootstrap_script"] = Path(script_file).read_text()
                except (OSError, TypeError, UnicodeDecodeError) as error:
                    problems.append(f"bootstrap_script_file of {region_data['region']} cannot be read ({error})")
            if region_data.get("instance") is not None:
                region_data["instance"] = _instance_from_dict(region_data["instance"], problems)
            regions.append(RegionConfig(**region_data))

        instance = _instance_from_dict(data["instance"], problems) if data.get("instance") is not None else None
        wait = None
        if data.get("wait") is not None:
            _check_keys("wait", data["wait"], {"timeout_secs", "initial_delay_secs", "max_delay_secs"}, set(), problems)
            if not problems:
                wait = WaitConfig(**data["wait"])
        try:
            shape = TopologyShape(data.get("shape", TopologyShape.FULL_MESH.value))
        except ValueError:
            problems.append(f"unknown topology shape {data.get('shape')!r}, expected one of {[s.value for s in TopologyShape]}")
            shape = None
        if problems:
            raise ValidationError(problems)

        return TopologyConfig(
            data.get("name", DEFAULT_TOPOLOGY_NAME),
            regions,
            instance=instance,
            shape=shape,
            hub_region=data.get("hub_region"),
            ssh_cidr=data.get("ssh_cidr", DEFAULT_SSH_CIDR),
            wait=wait,
            max_workers=data.get("max_workers"),
        )


def _check_keys(where: str, data: Any, allowed: set, required: set, problems: List[str]) -> None:
    if not isinstance(data, dict):
        problems.append(f"{where} should be an object, got {type(data).__name__}")
        return
    unknown = sorted(set(data.keys()) - allowed)
    if unknown:
        problems.append(f"{where} has unknown key(s) {unknown}")
    missing = sorted(required - set(data.keys()))
    if missing:
        problems.append(f"{where} is missing required key(s) {missing}")


def _instance_from_dict(data: Dict[str, Any], problems: List[str]) -> Optional[InstanceConfig]:
    _check_keys("instance", data, {"instance_type", "image_id", "image_filter", "associate_public_ip"}, set(), problems)
    if problems:
        raise ValidationError(problems)
    data = dict(data)
    if data.get("image_filter") is not None:
        _check_keys("instance.image_filter", data["image_filter"], {"owner", "name_pattern", "architecture"}, set(), problems)
        if problems:
            raise ValidationError(problems)
        data["image_filter"] = ImageFilter(**data["image_filter"])
    return InstanceConfig(**data)


def load_topology(path: Union[str, Path]) -> TopologyConfig:
    """Load a topology from a JSON document."""
    path = Path(path)
    try:
        data = json.loads(path.read_text())
    except json.JSONDecodeError as error:
        raise ValidationError([f"{path} is not valid JSON: {error}"])
    module_logger.info(f"Loaded topology {data.get('name', DEFAULT_TOPOLOGY_NAME)!r} from {path}")
    return TopologyConfig.from_dict(data)
