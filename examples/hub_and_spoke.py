# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

import vpcmesh.api as mesh
from vpcmesh.api import *

mesh.init_basic_logging()

topology = (
    TopologyConfig.builder()
    .with_name("hub-demo")
    .with_region("us-east-1", "10.10.0.0/16", "10.10.1.0/24")
    .with_region("us-west-2", "10.11.0.0/16", "10.11.1.0/24")
    .with_region("eu-west-1", "10.12.0.0/16", "10.12.1.0/24")
    # spokes can only talk to the hub
    .with_shape(TopologyShape.HUB_AND_SPOKE, hub_region="us-east-1")
    .with_instance(InstanceConfig(instance_type="t3.micro", image_filter=ImageFilter()))
    .build()
)


class PrintingHook(ProvisioningHook):
    def on_resource_created(self, kind, key, resource_id):
        print(f"+ {kind.value} {resource_id} ({key})")

    def on_resource_deleted(self, kind, key, resource_id):
        print(f"- {kind.value} {resource_id} ({key})")

    def on_peering_state(self, pair_name, connection_id, state):
        print(f"~ {pair_name} {connection_id} -> {state.value}")


provisioner = TopologyProvisioner.from_topology(topology, hooks=[LoggingHook(), PrintingHook()])

# network and peering only, instances can be launched later with a plain 'converge()'
provisioner.converge(until=Phase.PEERING_ROUTES)
print(provisioner.status().summary())

provisioner.teardown()
