# Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
# SPDX-License-Identifier: Apache-2.0

import logging
from abc import ABC, abstractmethod
from typing import Sequence

from overrides import overrides

from .state import PeeringState, ResourceKind

module_logger = logging.getLogger(__name__)


class ProvisioningHook(ABC):
    """Callbacks on resource lifecycle events. Called from worker threads, implementations should be thread-safe."""

    @abstractmethod
    def on_resource_created(self, kind: ResourceKind, key: str, resource_id: str) -> None: ...

    @abstractmethod
    def on_resource_deleted(self, kind: ResourceKind, key: str, resource_id: str) -> None: ...

    @abstractmethod
    def on_peering_state(self, pair_name: str, connection_id: str, state: PeeringState) -> None: ...


class LoggingHook(ProvisioningHook):
    @overrides
    def on_resource_created(self, kind: ResourceKind, key: str, resource_id: str) -> None:
        module_logger.info(f"Created {kind.value} {resource_id} for {key}")

    @overrides
    def on_resource_deleted(self, kind: ResourceKind, key: str, resource_id: str) -> None:
        module_logger.info(f"Deleted {kind.value} {resource_id} of {key}")

    @overrides
    def on_peering_state(self, pair_name: str, connection_id: str, state: PeeringState) -> None:
        module_logger.info(f"Peering connection {connection_id} ({pair_name}) is {state.value}")


class HookDispatcher:
    """Fans events out to hooks. A failing hook is logged and never breaks provisioning."""

    def __init__(self, hooks: Sequence[ProvisioningHook]) -> None:
        self._hooks = list(hooks)

    def _dispatch(self, method: str, *args) -> None:
        for hook in self._hooks:
            try:
                getattr(hook, method)(*args)
            except Exception as error:
                module_logger.error(f"Hook {hook.__class__.__name__}.{method} failed: {error!r}")

    def resource_created(self, kind: ResourceKind, key: str, resource_id: str) -> None:
        self._dispatch("on_resource_created", kind, key, resource_id)

    def resource_deleted(self, kind: ResourceKind, key: str, resource_id: str) -> None:
        self._dispatch("on_resource_deleted", kind, key, resource_id)

    def peering_state(self, pair_name: str, connection_id: str, state: PeeringState) -> None:
        self._dispatch("on_peering_state", pair_name, connection_id, state)
