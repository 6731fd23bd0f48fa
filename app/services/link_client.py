"""
Clients for the server link function.

HttpLinkClient calls the link endpoint of a remote deployment with a service
bearer token; LocalLinkClient runs the link service in-process. Both turn a
missing answer into TransportError or LinkTimeout; an explicit answer is
returned as a LinkResponse, success or not.
"""
import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

import httpx
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from app.core.config import LINK_FUNCTION_URL, LINK_TIMEOUT_SECONDS
from app.core.errors import LinkTimeout, TransportError
from app.core.security import create_service_token
from app.db.session import SessionLocal
from app.schemas.billing import LinkRequest, LinkResponse
from app.services.link_service import link_subscription
from app.services.stripe_service import PaymentProvider, get_payment_provider

logger = logging.getLogger(__name__)


class LinkClient(ABC):
    @abstractmethod
    async def link(self, request: LinkRequest) -> LinkResponse:
        """Ask the link function to verify and record a subscription."""


class HttpLinkClient(LinkClient):
    def __init__(
        self,
        base_url: str,
        timeout: float = LINK_TIMEOUT_SECONDS,
        token_factory: Callable[[], str] = create_service_token,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url
        self.timeout = timeout
        self.token_factory = token_factory
        self.transport = transport

    async def link(self, request: LinkRequest) -> LinkResponse:
        url = f"{self.base_url.rstrip('/')}/billing/link"
        headers = {"Authorization": f"Bearer {self.token_factory()}"}
        payload = request.model_dump(by_alias=True)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            logger.warning(f"Link call timed out: subscription_id={request.provider_subscription_id}")
            raise LinkTimeout(detail=str(e)) from e
        except httpx.HTTPError as e:
            logger.warning(f"Link call transport error: subscription_id={request.provider_subscription_id}, error={e}")
            raise TransportError(detail=str(e)) from e

        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict) or "success" not in body:
            logger.warning(f"Link call returned no usable answer: status={response.status_code}")
            raise TransportError(detail=f"Unexpected link response (HTTP {response.status_code})")

        return LinkResponse(success=bool(body["success"]), error=body.get("error"))


class LocalLinkClient(LinkClient):
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        provider_factory: Callable[[], PaymentProvider] = get_payment_provider,
    ):
        self._session_factory = session_factory
        self._provider_factory = provider_factory

    async def link(self, request: LinkRequest) -> LinkResponse:
        def work():
            with self._session_factory() as db:
                return link_subscription(db, request, self._provider_factory())

        try:
            return await run_in_threadpool(work)
        except Exception as e:
            logger.exception(f"In-process link failed: subscription_id={request.provider_subscription_id}")
            raise TransportError(detail=str(e)) from e


def get_link_client() -> LinkClient:
    if LINK_FUNCTION_URL:
        return HttpLinkClient(LINK_FUNCTION_URL)
    return LocalLinkClient()
