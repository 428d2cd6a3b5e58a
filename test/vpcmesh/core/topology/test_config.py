# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import json

import pytest

from vpcmesh.core.topology.config import (
    UBUNTU_IMAGE_OWNER,
    ImageFilter,
    InstanceConfig,
    PeeringPair,
    TopologyConfig,
    TopologyShape,
    load_topology,
)
from vpcmesh.core.topology.errors import ValidationError
from vpcmesh.core.topology.validation import validate_topology

THREE_REGIONS = {
    "name": "demo",
    "regions": [
        {"region": "us-east-1", "vpc_cidr": "10.0.0.0/16", "subnet_cidr": "10.0.1.0/24", "key_name": "east-key"},
        {"region": "us-west-2", "vpc_cidr": "10.1.0.0/16", "subnet_cidr": "10.1.1.0/24"},
        {"region": "eu-west-1", "vpc_cidr": "10.2.0.0/16", "subnet_cidr": "10.2.1.0/24"},
    ],
}


class TestTopologyConfig:
    def test_full_mesh_pairs_follow_region_order(self):
        topology = TopologyConfig.from_dict(THREE_REGIONS)
        assert [pair.name for pair in topology.pairs()] == [
            "us-east-1--us-west-2",
            "us-east-1--eu-west-1",
            "us-west-2--eu-west-1",
        ]
        assert topology.peers_of("us-west-2") == ["us-east-1", "eu-west-1"]

    def test_hub_and_spoke_pairs(self):
        topology = (
            TopologyConfig.builder()
            .with_region("us-east-1", "10.0.0.0/16", "10.0.1.0/24")
            .with_region("us-west-2", "10.1.0.0/16", "10.1.1.0/24")
            .with_region("eu-west-1", "10.2.0.0/16", "10.2.1.0/24")
            .with_shape(TopologyShape.HUB_AND_SPOKE, "us-west-2")
            .build()
        )
        assert [(p.requester, p.accepter) for p in topology.pairs()] == [("us-west-2", "us-east-1"), ("us-west-2", "eu-west-1")]
        # spokes cannot reach each other (no transitive peering)
        assert topology.peers_of("us-east-1") == ["us-west-2"]
        assert topology.peers_of("us-west-2") == ["us-east-1", "eu-west-1"]

    def test_peering_pair(self):
        pair = PeeringPair("a", "b")
        assert pair.touches("a") and pair.touches("b") and not pair.touches("c")
        assert pair.other("a") == "b"
        assert pair.other("b") == "a"
        assert pair == PeeringPair("a", "b")

    def test_instance_defaults_to_ubuntu_filter(self):
        instance = InstanceConfig()
        assert instance.image_id is None
        assert instance.image_filter.owner == UBUNTU_IMAGE_OWNER
        assert InstanceConfig(image_id="ami-1").image_filter is None

    def test_region_instance_override(self):
        data = dict(THREE_REGIONS)
        data["instance"] = {"instance_type": "t3.micro", "image_id": "ami-default"}
        data["regions"] = [dict(r) for r in THREE_REGIONS["regions"]]
        data["regions"][1]["instance"] = {"image_filter": {"owner": "self", "name_pattern": "golden-*"}}
        topology = TopologyConfig.from_dict(data)

        assert topology.instance_for("us-east-1").image_id == "ami-default"
        assert topology.instance_for("us-east-1").instance_type == "t3.micro"
        west = topology.instance_for("us-west-2")
        assert west.image_id is None
        assert west.image_filter == ImageFilter("self", "golden-*")

    def test_from_dict_reports_all_unknown_and_missing_keys(self):
        data = {"regions": [{"region": "us-east-1", "vpc": "10.0.0.0/16"}, "not-a-region"], "colour": "blue"}
        with pytest.raises(ValidationError) as error:
            TopologyConfig.from_dict(data)
        # top level problems are reported before the regions are looked at
        assert error.value.problems == ["topology has unknown key(s) ['colour']"]

        del data["colour"]
        with pytest.raises(ValidationError) as error:
            TopologyConfig.from_dict(data)
        assert "regions[0] has unknown key(s) ['vpc']" in error.value.problems
        assert "regions[0] is missing required key(s) ['subnet_cidr', 'vpc_cidr']" in error.value.problems
        assert "regions[1] should be an object, got str" in error.value.problems

    def test_from_dict_rejects_unknown_shape(self):
        data = dict(THREE_REGIONS, shape="ring")
        with pytest.raises(ValidationError) as error:
            TopologyConfig.from_dict(data)
        assert "unknown topology shape 'ring'" in str(error.value)

    def test_from_dict_regions_should_be_list(self):
        with pytest.raises(ValidationError):
            TopologyConfig.from_dict({"regions": {"us-east-1": {}}})

    def test_load_topology(self, tmp_path):
        script = tmp_path / "boot.sh"
        script.write_text("#!/bin/bash\necho hi\n")
        data = dict(THREE_REGIONS, wait={"timeout_secs": 30})
        data["regions"] = [dict(r) for r in THREE_REGIONS["regions"]]
        data["regions"][0]["bootstrap_script_file"] = str(script)
        path = tmp_path / "topology.json"
        path.write_text(json.dumps(data))

        topology = load_topology(path)

        assert topology.name == "demo"
        assert topology.region("us-east-1").bootstrap_script == "#!/bin/bash\necho hi\n"
        assert topology.region("us-east-1").key_name == "east-key"
        assert topology.wait.timeout_secs == 30
        assert topology.wait.max_delay_secs == 30

    def test_unreadable_bootstrap_script_file(self, tmp_path):
        data = dict(THREE_REGIONS)
        data["regions"] = [dict(r) for r in THREE_REGIONS["regions"]]
        data["regions"][1]["bootstrap_script_file"] = str(tmp_path / "missing.sh")
        data["regions"][2]["bootstrap_script_file"] = str(tmp_path)

        with pytest.raises(ValidationError) as error:
            TopologyConfig.from_dict(data)

        assert len(error.value.problems) == 2
        assert error.value.problems[0].startswith(f"bootstrap_script_file of {data['regions'][1]['region']} cannot be read")

    def test_non_numeric_wait_is_a_validation_error(self):
        topology = TopologyConfig.from_dict(dict(THREE_REGIONS, wait={"timeout_secs": "ten"}))
        with pytest.raises(ValidationError) as error:
            validate_topology(topology)
        assert error.value.problems == [f"wait configuration should be numeric, got {topology.wait!r}"]

    def test_load_topology_invalid_json(self, tmp_path):
        path = tmp_path / "topology.json"
        path.write_text("{not json")
        with pytest.raises(ValidationError):
            load_topology(path)

    def test_unknown_region_lookup(self):
        topology = TopologyConfig.from_dict(THREE_REGIONS)
        with pytest.raises(KeyError):
            topology.region("ap-south-1")
