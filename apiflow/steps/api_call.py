"""API_CALL step executor.

Resolves the connection and its secrets, builds the auth headers, renders the
request parameters and performs the HTTP call with ``httpx``. Transient
failures are retried with a linear backoff taken from the step's
``retry_config``; client errors stop immediately.
"""

from __future__ import annotations

import base64
import logging
import time
from typing import Any, Dict, List, Optional, Tuple

import httpx

from ..collaborators import (
    REQUIRED_SECRET_TYPES,
    ApiConnection,
    AuthType,
    ConnectionDirectory,
    SecretsProvider,
    SecretType,
)
from ..constants import HTTP_METHODS
from ..contracts import ExecutionContext, Step, StepKind, StepResult
from ..errors import NotFoundError, PermanentError
from ..utils.retry import linear_backoff, sleep_ms
from .base import StepExecutor, elapsed_ms
from .substitution import substitute_variables

logger = logging.getLogger(__name__)

TRANSIENT_STATUS_CODES = frozenset({408, 429})

# Error code prefixes for client errors; they make the failure permanent.
STATUS_ERROR_CODES = {
    400: "VALIDATION_ERROR",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    422: "VALIDATION_ERROR",
}


def resolve_request_target(step: Step) -> Tuple[str, str]:
    """Return ``(method, path)`` from explicit fields or a legacy action.

    Legacy actions have the form ``"METHOD /path"``.
    """
    method, path = step.method, step.path
    if not (method and path):
        if not step.action:
            raise ValueError("API call step requires method and path or an action")
        parts = step.action.strip().split(" ")
        if len(parts) != 2:
            raise ValueError(
                f"Invalid action format: {step.action}. Expected \"METHOD /path\""
            )
        method, path = parts
    method = method.upper()
    if method not in HTTP_METHODS:
        raise ValueError(f"Unsupported HTTP method: {method}")
    return method, path


def is_transient_status(status_code: int) -> bool:
    return status_code in TRANSIENT_STATUS_CODES or status_code >= 500


class ApiCallExecutor(StepExecutor):
    kind = StepKind.API_CALL

    def __init__(
        self,
        connections: ConnectionDirectory,
        secrets: SecretsProvider,
        http_client: Optional[httpx.AsyncClient] = None,
        request_timeout: float = 30.0,
    ) -> None:
        self.connections = connections
        self.secrets = secrets
        self.http_client = http_client
        self.request_timeout = request_timeout

    def validate(self, step: Step) -> List[str]:
        errors = []
        if not step.api_connection_id:
            errors.append("API call step requires an apiConnectionId")
        try:
            resolve_request_target(step)
        except ValueError as e:
            errors.append(str(e))
        return errors

    async def build_auth_headers(
        self, connection: ApiConnection, user_id: str
    ) -> Dict[str, str]:
        """Resolve the connection's secrets and turn them into headers.

        Raises:
            PermanentError: a required secret is missing, inactive or expired.
        """
        required = REQUIRED_SECRET_TYPES.get(connection.auth_type, ())
        if not required:
            return {}
        validation = await self.secrets.validate_connection_secrets(
            user_id, connection.id, required
        )
        if not validation.is_valid:
            details = []
            if validation.missing:
                details.append(f"missing {', '.join(validation.missing)}")
            details.extend(validation.issues)
            raise PermanentError(
                f"Secrets for connection {connection.id} are not usable: "
                f"{'; '.join(details)}"
            )

        metadata = await self.secrets.get_secrets_for_connection(user_id, connection.id)
        by_type = {secret.type: secret.name for secret in metadata if secret.is_active}
        values = {
            secret_type: await self.secrets.get_secret_value(user_id, by_type[secret_type])
            for secret_type in required
        }

        if connection.auth_type == AuthType.API_KEY:
            return {connection.auth_header: values[SecretType.API_KEY]}
        if connection.auth_type == AuthType.BEARER_TOKEN:
            return {"Authorization": f"Bearer {values[SecretType.BEARER_TOKEN]}"}
        if connection.auth_type == AuthType.OAUTH2:
            return {"Authorization": f"Bearer {values[SecretType.OAUTH2_TOKEN]}"}
        if connection.auth_type == AuthType.BASIC_AUTH:
            encoded = base64.b64encode(values[SecretType.BASIC_AUTH].encode()).decode()
            return {"Authorization": f"Basic {encoded}"}
        return {}

    async def execute(self, step: Step, context: ExecutionContext) -> StepResult:
        started = time.monotonic()
        method, path = resolve_request_target(step)
        metadata: Dict[str, Any] = {"method": method, "path": path}

        connection = await self.connections.get_connection(step.api_connection_id)
        if connection is None:
            error = NotFoundError(f"API connection not found: {step.api_connection_id}")
            return StepResult(
                success=False,
                error=str(error),
                duration=elapsed_ms(started),
                retryable=False,
                metadata=metadata,
            )

        try:
            auth_headers = await self.build_auth_headers(connection, context.user_id)
        except (PermanentError, NotFoundError) as e:
            logger.error(f"API call step {step.name!r} cannot authenticate: {e}")
            return StepResult(
                success=False,
                error=str(e),
                duration=elapsed_ms(started),
                retryable=False,
                metadata=metadata,
            )

        params = substitute_variables(step.parameters, context)
        path = str(substitute_variables(path, context))
        request = self._build_request(connection, method, path, params, auth_headers)

        max_retries = step.retry_config.max_retries
        error = None
        for attempt in range(max_retries + 1):
            try:
                response = await self._send(request)
            except httpx.HTTPError as e:
                error = f"TRANSIENT_ERROR: API call failed: {type(e).__name__}: {e}"
            else:
                metadata["status_code"] = response.status_code
                if response.is_success:
                    logger.info(
                        f"API call step {step.name!r} completed: {method} {path} "
                        f"-> {response.status_code}"
                    )
                    return StepResult(
                        success=True,
                        data=self._parse_body(response),
                        duration=elapsed_ms(started),
                        retry_count=attempt,
                        metadata=metadata,
                    )
                error = f"API call failed: {response.status_code} {response.reason_phrase}"
                if not is_transient_status(response.status_code):
                    code = STATUS_ERROR_CODES.get(response.status_code, "CLIENT_ERROR")
                    logger.error(f"API call step {step.name!r} failed permanently: {error}")
                    return StepResult(
                        success=False,
                        error=f"{code}: {error}",
                        duration=elapsed_ms(started),
                        retry_count=attempt,
                        retryable=False,
                        metadata=metadata,
                    )
            logger.warning(
                f"API call step {step.name!r} attempt {attempt + 1}/{max_retries + 1} "
                f"failed: {error}"
            )
            if attempt < max_retries:
                await sleep_ms(linear_backoff(attempt + 1, step.retry_config.retry_delay))

        return StepResult(
            success=False,
            error=error,
            duration=elapsed_ms(started),
            retry_count=max_retries,
            metadata=metadata,
        )

    def _build_request(
        self,
        connection: ApiConnection,
        method: str,
        path: str,
        params: Dict[str, Any],
        auth_headers: Dict[str, str],
    ) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json", **auth_headers}
        headers.update({k: str(v) for k, v in (params.get("headers") or {}).items()})
        body = params.get("body")
        return {
            "method": method,
            "url": connection.base_url.rstrip("/") + "/" + path.lstrip("/"),
            "headers": headers,
            "params": params.get("query") or None,
            "json": body if method != "GET" and body is not None else None,
        }

    async def _send(self, request: Dict[str, Any]) -> httpx.Response:
        if self.http_client is not None:
            return await self.http_client.request(**request)
        async with httpx.AsyncClient(timeout=self.request_timeout) as client:
            return await client.request(**request)

    @staticmethod
    def _parse_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text
