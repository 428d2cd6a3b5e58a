# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import logging

from mock import MagicMock

from vpcmesh.core.topology.hooks import HookDispatcher, LoggingHook, ProvisioningHook
from vpcmesh.core.topology.state import PeeringState, ResourceKind


class TestHookDispatcher:
    def test_failing_hook_does_not_break_the_others(self, caplog):
        failing = MagicMock(spec=ProvisioningHook)
        failing.on_resource_created.side_effect = RuntimeError("hook down")
        recording = MagicMock(spec=ProvisioningHook)
        dispatcher = HookDispatcher([failing, recording])

        with caplog.at_level(logging.ERROR):
            dispatcher.resource_created(ResourceKind.VPC, "us-east-1", "vpc-1")

        recording.on_resource_created.assert_called_once_with(ResourceKind.VPC, "us-east-1", "vpc-1")
        assert "hook down" in caplog.text

    def test_events_are_routed(self):
        hook = MagicMock(spec=ProvisioningHook)
        dispatcher = HookDispatcher([hook])
        dispatcher.resource_deleted(ResourceKind.SUBNET, "us-west-2", "subnet-1")
        dispatcher.peering_state("a--b", "pcx-1", PeeringState.ACTIVE)
        hook.on_resource_deleted.assert_called_once_with(ResourceKind.SUBNET, "us-west-2", "subnet-1")
        hook.on_peering_state.assert_called_once_with("a--b", "pcx-1", PeeringState.ACTIVE)

    def test_logging_hook(self, caplog):
        with caplog.at_level(logging.INFO):
            HookDispatcher([LoggingHook()]).peering_state("a--b", "pcx-1", PeeringState.PENDING_ACCEPTANCE)
        assert "Peering connection pcx-1 (a--b) is pending-acceptance" in caplog.text
