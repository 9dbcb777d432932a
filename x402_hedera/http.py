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
"""Starlette adapter that puts a ProtocolGateway in front of an endpoint."""

import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .core import PaymentRequestBroker, ProtocolGateway
from .extension import add_extension_activation_header
from .types import GatewayRequest, GatewayResponse, GatewayState, X402Metadata


logger = logging.getLogger(__name__)

Endpoint = Callable[[Request], Awaitable[Response]]

JSONRPC_PAYMENT_REQUIRED = -32099
JSONRPC_PAYMENT_VERIFICATION_FAILED = -32098
JSONRPC_INVALID_PARAMS = -32602

CONTEXT_ID_HEADER = "X-Context-Id"


async def _read_json(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def _object(value: Any, name: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{name} must be an object")
    return value


def _payment_fields(body: Any, request: Request) -> Tuple[Optional[str], Any]:
    """Context id and ``payment`` field from a plain or JSON-RPC body.

    Raises:
        ValueError: the body has the wrong shape for either.
    """
    context_id = request.headers.get(CONTEXT_ID_HEADER)
    if not isinstance(body, dict):
        return context_id, None

    if body.get("jsonrpc") == "2.0":
        message = _object(_object(body.get("params"), "params").get("message"), "params.message")
        metadata = _object(message.get("metadata"), "params.message.metadata")
        body_context_id, payment = message.get("contextId"), metadata.get(X402Metadata.PAYMENT_KEY)
    else:
        body_context_id, payment = body.get("contextId"), body.get(X402Metadata.PAYMENT_KEY)
    if body_context_id is not None and not isinstance(body_context_id, str):
        raise ValueError("contextId must be a string")
    return body_context_id or context_id, payment


def _bad_request(body: Any, error: str) -> JSONResponse:
    if isinstance(body, dict) and body.get("jsonrpc") == "2.0":
        envelope = {
            "jsonrpc": "2.0",
            "id": body.get("id"),
            "error": {"code": JSONRPC_INVALID_PARAMS, "message": "Invalid params", "data": {"error": error}},
        }
        return JSONResponse(envelope, status_code=400)
    return JSONResponse({"error": error}, status_code=400)


def _gated_response(body: Any, response: GatewayResponse) -> JSONResponse:
    headers = add_extension_activation_header(dict(response.headers))
    if isinstance(body, dict) and body.get("jsonrpc") == "2.0":
        if response.state == GatewayState.REJECTED:
            code, message = JSONRPC_PAYMENT_VERIFICATION_FAILED, "Payment verification failed"
        else:
            code, message = JSONRPC_PAYMENT_REQUIRED, "Payment required"
        envelope = {
            "jsonrpc": "2.0",
            "id": body.get("id"),
            "error": {"code": code, "message": message, "data": response.body},
        }
        return JSONResponse(envelope, status_code=402, headers=headers)
    return JSONResponse(response.body, status_code=402, headers=headers)


def payment_gated_endpoint(
    gateway: ProtocolGateway,
    endpoint: Endpoint,
    operation: str = "default",
) -> Endpoint:
    """Wrap a Starlette endpoint so it only runs once the caller has paid.

    Unpaid calls get HTTP 402 with the payment terms, as a JSON-RPC error
    envelope when the request was JSON-RPC. Paid calls reach ``endpoint`` with
    ``request.state.payment_verified``, ``payment_request_id`` and
    ``payment_tx_hash`` set.

    Example:
        app = Starlette(routes=[
            Route("/research", payment_gated_endpoint(gateway, research), methods=["POST"]),
        ])
    """

    async def gated(request: Request) -> Response:
        body = await _read_json(request)
        try:
            context_id, payment = _payment_fields(body, request)
        except ValueError as e:
            logger.warning(f"Rejecting malformed request body: {e}")
            return _bad_request(body, str(e))
        response = await gateway.handle(
            GatewayRequest(
                context_id=context_id,
                operation=operation,
                headers=dict(request.headers),
                payment=payment,
                payload=body,
            )
        )
        if response.payment_required:
            return _gated_response(body, response)

        request.state.payment_verified = response.settlement_reference is not None
        request.state.payment_request_id = response.requirement.request_id if response.requirement else None
        request.state.payment_tx_hash = response.settlement_reference
        return await endpoint(request)

    return gated


def payment_status_endpoint(broker: PaymentRequestBroker) -> Endpoint:
    """Starlette endpoint reporting a requirement's lifecycle status.

    Mount it with a ``{request_id}`` path parameter; unknown or forgotten ids
    get 404.

    Example:
        Route("/payments/status/{request_id}", payment_status_endpoint(gateway.broker))
    """

    async def payment_status(request: Request) -> Response:
        request_id = request.path_params["request_id"]
        status = broker.status(request_id)
        if status is None:
            return JSONResponse({"requestId": request_id, "error": "Unknown payment request"}, status_code=404)
        return JSONResponse({"requestId": request_id, "status": status.value})

    return payment_status
