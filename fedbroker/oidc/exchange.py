"""Client-assertion token exchange with the external authority.

Each configured service is exchanged separately: the service name is turned
into a scope string, a fresh assertion is minted for that single request, and
the authority's token endpoint returns a bearer token for that scope. The
cycle is all-or-nothing; the first failing service aborts it with
``ExchangeFailed`` and no token set is produced.
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from fedbroker.core.clock import Clock, system_clock
from fedbroker.core.errors import BrokerError, ExchangeFailed
from fedbroker.crypto.assertion import AssertionFactory
from fedbroker.oidc.types import ServiceToken, ServiceTokenSet

logger = logging.getLogger(__name__)

CLIENT_ASSERTION_TYPE = "urn:ietf:params:oauth:client-assertion-type:jwt-bearer"
HTTP_OK = 200


class TokenExchanger:
    """Converts assertions into service-scoped access tokens."""

    def __init__(
        self,
        authority_host: str,
        scope_template: str,
        timeout: float = 30.0,
        clock: Clock = system_clock,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._authority_host = authority_host.rstrip("/")
        self._scope_template = scope_template
        self._timeout = timeout
        self._clock = clock
        self._transport = transport

    def token_endpoint(self, tenant_id: str) -> str:
        """Token endpoint URL for a tenant."""
        return f"{self._authority_host}/{tenant_id}/oauth2/v2.0/token"

    def scope_for(self, service: str) -> str:
        """Scope string requested for a service name."""
        return self._scope_template.format(service=service)

    async def exchange(
        self,
        tenant_id: str,
        client_id: str,
        services: list[str],
        assertion_factory: AssertionFactory,
    ) -> ServiceTokenSet:
        """Obtain one token per service; fail the whole set on any error."""
        access_tokens: dict[str, str] = {}
        earliest: datetime | None = None
        endpoint = self.token_endpoint(tenant_id)

        async with httpx.AsyncClient(
            timeout=self._timeout, transport=self._transport
        ) as client:
            for service in services:
                token = await self._exchange_one(
                    client, endpoint, client_id, service, assertion_factory
                )
                access_tokens[service] = token.access_token
                if earliest is None or token.expires_at < earliest:
                    earliest = token.expires_at

        if earliest is None:
            raise ExchangeFailed("*", "no services configured")
        logger.info(
            "Obtained access tokens for %s (earliest expiry %s)",
            ", ".join(access_tokens),
            earliest.isoformat(),
        )
        return ServiceTokenSet(access_tokens=access_tokens, expires_at=earliest)

    async def _exchange_one(
        self,
        client: httpx.AsyncClient,
        endpoint: str,
        client_id: str,
        service: str,
        assertion_factory: AssertionFactory,
    ) -> ServiceToken:
        try:
            assertion = assertion_factory()
        except BrokerError as exc:
            raise ExchangeFailed(service, exc.message) from exc

        data = {
            "grant_type": "client_credentials",
            "client_id": client_id,
            "scope": self.scope_for(service),
            "client_assertion_type": CLIENT_ASSERTION_TYPE,
            "client_assertion": assertion,
        }
        try:
            response = await client.post(
                endpoint,
                data=data,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.TimeoutException as exc:
            raise ExchangeFailed(service, "token request timed out") from exc
        except httpx.RequestError as exc:
            raise ExchangeFailed(service, f"token request failed: {exc}") from exc

        body = _json_body(response)
        if response.status_code != HTTP_OK:
            logger.warning(
                "Token exchange for %s rejected: status=%s error=%s",
                service,
                response.status_code,
                body.get("error"),
            )
            raise ExchangeFailed(
                service,
                body.get("error_description") or "authority rejected the request",
                error_code=body.get("error"),
                status_code=response.status_code,
            )

        access_token = body.get("access_token")
        if not access_token:
            raise ExchangeFailed(service, "empty token response")
        return ServiceToken(
            service=service,
            access_token=access_token,
            expires_at=self._expiry_from(service, body),
        )

    def _expiry_from(self, service: str, body: dict[str, Any]) -> datetime:
        """Absolute expiry from ``expires_in`` or, failing that, ``expires_on``."""
        try:
            if body.get("expires_in") is not None:
                return self._clock() + timedelta(seconds=int(body["expires_in"]))
            if body.get("expires_on") is not None:
                return datetime.fromtimestamp(
                    int(body["expires_on"]), tz=UTC
                )
        except (TypeError, ValueError, OverflowError, OSError) as exc:
            raise ExchangeFailed(service, f"invalid expiry in response: {exc}") from exc
        raise ExchangeFailed(service, "token response carried no expiry")


def _json_body(response: httpx.Response) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        logger.info("Token endpoint returned a non-JSON body", exc_info=True)
        return {}
    return body if isinstance(body, dict) else {}
