# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

from ._logging_config import init_basic_logging
from .core.platform.definitions.aws.common import AWSAccessPair
from .core.platform.definitions.aws.ec2.client_wrapper import VPCManager
from .core.topology.bootstrap import render_bootstrap_script
from .core.topology.config import (
    ImageFilter,
    InstanceConfig,
    PeeringPair,
    RegionConfig,
    TopologyConfig,
    TopologyShape,
    WaitConfig,
    load_topology,
)
from .core.topology.errors import (
    ConvergenceCancelled,
    DependencyNotReadyError,
    DependencyViolationError,
    PartialConvergenceError,
    ProviderRejected,
    RouteConflictError,
    TopologyError,
    ValidationError,
)
from .core.topology.hooks import LoggingHook, ProvisioningHook
from .core.topology.provisioner import TopologyProvisioner
from .core.topology.state import (
    ConvergenceResult,
    PeeringState,
    Phase,
    ResourceKind,
    TeardownResult,
    TopologyStatus,
)
from .core.topology.validation import validate_topology
