from __future__ import annotations

import math
from typing import TYPE_CHECKING, Any

from loguru import logger

from qms_adapter.app.core import SERVICE_NAME
from qms_adapter.app.domain.models import UsageEvent, UsageUpdateRequest
from qms_adapter.app.domain.processing_context import ProcessingContext
from qms_adapter.app.ports.http_client import AbstractHttpClient, HttpClientError, RequestTimeout

if TYPE_CHECKING:
    from loguru import Logger


class UsageForwarder:
    """
    Usage handler that forwards each decoded update to the QMS usage endpoint.

    The update is sent as a SET of `usage_value` for the user, with the
    `@<user_domain>` suffix stripped from the username. Every failure (bad
    value, HTTP error, timeout) is logged here and goes no further: the
    consumer has already settled the delivery by the time this runs.
    When QMS is disabled the update is only logged.
    """

    def __init__(
        self,
        client: AbstractHttpClient | None,
        *,
        enabled: bool,
        endpoint: str,
        user_domain: str,
        connect_timeout_seconds: float = 5.0,
        read_timeout_seconds: float = 15.0,
        log: "Logger | None" = None,
    ) -> None:
        if enabled and client is None:
            raise ValueError("an HTTP client is required when QMS is enabled")
        self._client = client
        self._enabled = enabled
        self._endpoint = endpoint
        self._domain_suffix = f"@{user_domain}"
        self._timeout = RequestTimeout(
            connect_seconds=connect_timeout_seconds,
            read_seconds=read_timeout_seconds,
        )
        self._logger = (log or logger).bind(service_name=SERVICE_NAME, component="usage_forwarder")

    def _log(self, event: str, **kwargs: Any) -> None:
        self._logger.bind(event=event, **kwargs).info("")

    def build_request(self, event: UsageEvent) -> UsageUpdateRequest:
        """Reshape a UsageEvent into the QMS request body. Raises ValueError on a bad value."""
        usage_value = float(event.value.strip())
        if not math.isfinite(usage_value):
            raise ValueError(f"usage value must be finite: {event.value!r}")
        username = (event.username or "").removesuffix(self._domain_suffix)
        return UsageUpdateRequest(
            username=username,
            resource_name=event.attribute,
            usage_value=usage_value,
        )

    async def __call__(self, ctx: ProcessingContext, event: UsageEvent) -> None:
        self._logger.debug("QMS enabled: {}", self._enabled)
        if not self._enabled:
            self._log(
                "usage_update_received",
                attribute=event.attribute,
                value=event.value,
                unit=event.unit,
                user_id=event.user_id,
                username=event.username,
            )
            return

        try:
            request = self.build_request(event)
        except ValueError as exc:
            self._logger.bind(event="usage_value_invalid", attribute=event.attribute).error(
                "could not parse usage value {!r}: {}", event.value, exc
            )
            return

        self._logger.debug("url: {}", self._endpoint)
        try:
            response = await self._client.post_json(
                self._endpoint,
                request.to_dict(),
                timeout=self._timeout,
            )
        except HttpClientError as exc:
            self._logger.bind(
                event="qms_update_failed",
                url=self._endpoint,
                username=request.username,
                resource_name=request.resource_name,
            ).error("{}", exc)
            return

        bound = self._logger.bind(
            event="qms_update_sent",
            url=response.url,
            status_code=response.status_code,
            username=request.username,
            resource_name=request.resource_name,
            routing_key=ctx.routing_key,
        )
        if response.is_success:
            bound.info("response: {}", response.text)
        else:
            bound.warning("QMS rejected usage update: {}", response.text)
