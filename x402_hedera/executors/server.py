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
"""Server-side executor for payment-gated agents."""

import logging
from typing import Optional

from a2a.server.tasks import TaskUpdater
from a2a.types import Part, TextPart

from .base import X402BaseExecutor, request_headers
from ..core import ProtocolGateway
from ..types import (
    AgentExecutor,
    EventQueue,
    GatewayRequest,
    GatewayResponse,
    GatewayState,
    PaymentStatus,
    RequestContext,
    TaskState,
    X402ExtensionConfig,
    X402Metadata
)


logger = logging.getLogger(__name__)


class PaymentGatedExecutor(X402BaseExecutor):
    """Server-side payment gate for A2A agents.

    Every message passes through the gateway first. Unpaid requests end as
    ``input_required`` tasks whose status message carries the payment terms;
    paid requests reach the delegate with the payment recorded in the
    message metadata.

    Example:
        gateway = ProtocolGateway.from_settings(X402HederaSettings.from_env())
        executor = PaymentGatedExecutor(MyAgentExecutor(), gateway)
        handler = DefaultRequestHandler(agent_executor=executor, task_store=InMemoryTaskStore())
    """

    def __init__(
        self,
        delegate: AgentExecutor,
        gateway: ProtocolGateway,
        config: Optional[X402ExtensionConfig] = None,
        operation: str = "default",
    ):
        """Initialize server executor.

        Args:
            delegate: Underlying agent executor for business logic
            gateway: Decides whether each request must pay
            config: x402 extension configuration
            operation: Operation name used for pricing
        """
        super().__init__(delegate, config)
        self.gateway = gateway
        self.operation = operation

    async def execute(
        self,
        context: RequestContext,
        event_queue: EventQueue
    ):
        """Payment gate: check → (request payment | annotate and delegate)."""
        if not self.is_active(context):
            return await self._delegate.execute(context, event_queue)

        message = context.message
        metadata = (message.metadata if message else None) or {}
        request = GatewayRequest(
            context_id=context.context_id,
            operation=self.operation,
            headers=request_headers(context),
            payment=metadata.get(X402Metadata.PAYMENT_KEY),
            payload=message,
        )

        response = await self.gateway.handle(request)
        if response.payment_required:
            await self._request_payment(context, event_queue, response)
            return

        if message and response.settlement_reference:
            message.metadata = {
                **metadata,
                X402Metadata.VERIFIED_KEY: True,
                X402Metadata.REQUEST_ID_KEY: response.requirement.request_id if response.requirement else None,
                X402Metadata.TX_HASH_KEY: response.settlement_reference,
            }
            logger.info(f"Payment {response.settlement_reference} recorded on message; executing delegate")

        await self._delegate.execute(context, event_queue)

    async def _request_payment(
        self,
        context: RequestContext,
        event_queue: EventQueue,
        response: GatewayResponse
    ):
        """Publish the payment terms as an input_required task status."""
        if not context.task_id:
            raise ValueError("Cannot request payment: task_id is missing from the context.")

        updater = TaskUpdater(event_queue, context.task_id, context.context_id)
        if not context.current_task:
            await updater.submit()

        rejected = response.state == GatewayState.REJECTED
        status_metadata = {
            X402Metadata.STATUS_KEY: (
                PaymentStatus.PAYMENT_REJECTED.value if rejected else PaymentStatus.PAYMENT_REQUIRED.value
            ),
            X402Metadata.REQUIRED_KEY: response.body,
        }
        if rejected and response.verification:
            status_metadata[X402Metadata.ERROR_KEY] = response.verification.code

        text = response.body.get("message") or "Payment required"
        status_message = updater.new_agent_message(
            parts=[Part(root=TextPart(text=text))],
            metadata=status_metadata,
        )
        logger.info(
            f"Task {context.task_id} -> {TaskState.input_required.value} "
            f"({status_metadata[X402Metadata.STATUS_KEY]})"
        )
        await updater.update_status(TaskState.input_required, message=status_message, final=True)
