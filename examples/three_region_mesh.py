# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: MIT-0

import sys
from pathlib import Path

import vpcmesh.api as mesh
from vpcmesh.api import *

mesh.init_basic_logging(log_dir="./logs")

# automatically reads default credentials for each region (unless 'profile' or 'role_arn' is set on the region)
# key pairs referenced by 'key_name' should already exist in their regions.
topology = load_topology(Path(__file__).parent / "three_region_mesh.json")
provisioner = TopologyProvisioner.from_topology(topology)

if len(sys.argv) > 1 and sys.argv[1] == "teardown":
    result = provisioner.teardown()
    print({kind.value: ids for kind, ids in result.deleted.items() if ids})
    sys.exit(0)

try:
    result = provisioner.converge()
except PartialConvergenceError as error:
    # everything realized so far is tagged, just run the script again to resume
    Path("./last_result.ckpt").write_text(error.result.serialize(compress=True))
    for failure in error.failures:
        print(f"FAILED: {failure!r}")
    raise

Path("./last_result.ckpt").write_text(result.serialize(compress=True))

status = provisioner.status()
print(status.summary())
assert status.is_converged(topology)

print("Verify connectivity (give cloud-init a minute or two):")
for line in result.connectivity_instructions(topology):
    print(f"  {line}")
