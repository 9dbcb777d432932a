# Copyright 2025 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     https://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
"""Base executor types and interfaces for x402 payment gating."""

from abc import ABC, abstractmethod
from typing import Dict, Optional

from ..extension import check_extension_activation
from ..types import (
    AgentExecutor,
    EventQueue,
    RequestContext,
    X402ExtensionConfig
)


def request_headers(context: RequestContext) -> Dict[str, str]:
    """HTTP headers of the A2A call, as captured by the server's call context."""
    call_context = getattr(context, "call_context", None)
    state = getattr(call_context, "state", None) or {}
    headers = state.get("headers") or {}
    return {str(key): str(value) for key, value in headers.items()}


class X402BaseExecutor(AgentExecutor, ABC):
    """Base executor with x402 protocol support."""

    def __init__(
        self,
        delegate: AgentExecutor,
        config: Optional[X402ExtensionConfig] = None
    ):
        """Initialize base executor.

        Args:
            delegate: The underlying agent executor to wrap
            config: x402 extension configuration
        """
        self._delegate = delegate
        self.config = config or X402ExtensionConfig()

    def is_active(self, context: RequestContext) -> bool:
        """Check if x402 extension is activated for this request.

        Active when the caller lists the extension in ``X-A2A-Extensions``,
        and always when the extension is required.
        """
        if check_extension_activation(request_headers(context)):
            return True
        return self.config.required

    @abstractmethod
    async def execute(
        self,
        context: RequestContext,
        event_queue: EventQueue
    ):
        """Execute the agent with x402 payment gating."""
        ...

    async def cancel(self, context: RequestContext, event_queue: EventQueue):
        return await self._delegate.cancel(context, event_queue)
