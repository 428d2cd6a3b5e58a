# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

from string import Template
from typing import List

from .config import RegionConfig, TopologyConfig

# EC2 limit for raw (pre base64) user data
MAX_USER_DATA_SIZE = 16 * 1024

DEFAULT_BOOTSTRAP_TEMPLATE = Template(
    """#!/bin/bash
set -euxo pipefail

apt-get update -y
apt-get install -y iputils-ping traceroute netcat-openbsd mtr-tiny

cat > /etc/motd <<'MOTD'
Topology : ${topology}
Region   : ${region}
VPC CIDR : ${vpc_cidr}
Peers    : ${peers}
MOTD

mkdir -p /var/lib/vpcmesh
cat > /var/lib/vpcmesh/peers <<'PEERS'
${peer_lines}
PEERS

echo "vpcmesh bootstrap completed for ${region}" > /var/lib/vpcmesh/bootstrap.done
"""
)


def render_bootstrap_script(topology: TopologyConfig, region_conf: RegionConfig) -> str:
    """User data for the instance of `region_conf`.

    A user provided script is passed through untouched, otherwise the default one is rendered which installs basic
    network diagnostics tools and records the peer VPC CIDRs on the host.
    """
    if region_conf.bootstrap_script is not None:
        return region_conf.bootstrap_script

    peer_lines: List[str] = []
    for peer in topology.peers_of(region_conf.region):
        peer_lines.append(f"{peer} {topology.region(peer).vpc_cidr}")

    return DEFAULT_BOOTSTRAP_TEMPLATE.substitute(
        topology=topology.name,
        region=region_conf.region,
        vpc_cidr=region_conf.vpc_cidr,
        peers=", ".join(topology.peers_of(region_conf.region)) or "-",
        peer_lines="\n".join(peer_lines),
    )
