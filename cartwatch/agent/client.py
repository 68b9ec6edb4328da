"""Client for delegating browser work to a remote agent.

The agent runs the same scrape and acquisition code on another machine
(typically one with a visible browser). Requests are POSTed to `/rpc`; the
response body is newline-delimited JSON: zero or more `rpc_progress`
frames followed by one `rpc_result` frame.
"""

import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from cartwatch.config import settings
from cartwatch.ingest.cart_extractor import CartProduct
from cartwatch.ingest.cart_scraper import CartScrapeResult
from cartwatch.ingest.errors import CartWatchError, CaptchaRequiredError, LoginRequiredError
from cartwatch.ingest.sku_acquisition import (
    AcquisitionOptions,
    AcquisitionProgress,
    AcquisitionResult,
    SkuAddResult,
)

logger = logging.getLogger(__name__)


class RemoteAgentError(CartWatchError):
    """The agent was unreachable or reported a failure."""


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _product_from_dict(data: dict[str, Any]) -> Optional[CartProduct]:
    price = _decimal(data.get("final_price"))
    if price is None or not data.get("listing_id"):
        return None
    return CartProduct(
        listing_id=str(data["listing_id"]),
        variant_id=str(data.get("variant_id") or ""),
        sku_properties=data.get("sku_properties") or "",
        sku_text=data.get("sku_text") or "",
        title=data.get("title") or "",
        image_url=data.get("image_url"),
        final_price=price,
        original_price=_decimal(data.get("original_price")),
        quantity=int(data.get("quantity") or 1),
    )


def _raise_for_agent_error(message: str) -> None:
    """Re-raise auth failures under their local types so callers can react."""
    lowered = message.lower()
    if "captcha" in lowered:
        raise CaptchaRequiredError(message)
    if "login" in lowered:
        raise LoginRequiredError(message)
    raise RemoteAgentError(message)


class RemoteAgentClient:
    """Calls `scrape_cart` / `add_all_skus_to_cart` on a remote agent."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.remote_agent_url).rstrip("/")
        self.token = token if token is not None else settings.remote_agent_token
        self.timeout = timeout or settings.remote_agent_timeout
        self._http_client = client

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/x-ndjson"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def call(self, method: str, params: dict[str, Any], on_progress=None) -> Any:
        """Run one RPC and return its result payload.

        Args:
            method: Agent method name
            params: JSON-serializable parameters
            on_progress: Optional callback receiving (progress dict, log line)

        Returns:
            The `result` field of the final frame
        """
        if not self.enabled:
            raise RemoteAgentError("Remote agent URL is not configured")

        client = await self._get_client()
        try:
            async with client.stream(
                "POST",
                f"{self.base_url}/rpc",
                json={"method": method, "params": params},
                headers=self._headers(),
            ) as response:
                if response.status_code == 401:
                    raise RemoteAgentError("Remote agent rejected the token")
                if response.status_code >= 400:
                    await response.aread()
                    raise RemoteAgentError(f"Remote agent returned {response.status_code}: {response.text[:200]}")

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    try:
                        frame = json.loads(line)
                    except json.JSONDecodeError:
                        logger.warning(f"Skipping malformed agent frame: {line[:120]}")
                        continue

                    frame_type = frame.get("type")
                    if frame_type == "rpc_progress":
                        if on_progress is not None:
                            on_progress(frame.get("progress") or {}, frame.get("log"))
                    elif frame_type == "rpc_result":
                        if frame.get("ok"):
                            return frame.get("result")
                        _raise_for_agent_error(str(frame.get("error") or "Agent RPC failed"))
        except httpx.HTTPError as e:
            raise RemoteAgentError(f"Remote agent call {method} failed: {e}") from e

        raise RemoteAgentError(f"Remote agent closed the stream without a result for {method}")

    async def scrape_cart(self, account_id: int, cookie_blob: Optional[str] = None) -> CartScrapeResult:
        result = await self.call("scrapeCart", {"account_id": account_id, "cookies": cookie_blob})
        result = result or {}
        products = [p for p in (_product_from_dict(d) for d in result.get("products") or []) if p is not None]
        return CartScrapeResult(
            success=bool(result.get("success")),
            products=products,
            total=len(products),
            ui_total=result.get("ui_total"),
            error=result.get("error"),
        )

    async def add_all_skus_to_cart(
        self,
        account_id: int,
        listing_id: str,
        cookie_blob: Optional[str] = None,
        options: Optional[AcquisitionOptions] = None,
    ) -> AcquisitionResult:
        options = options or AcquisitionOptions()
        params = {
            "account_id": account_id,
            "listing_id": listing_id,
            "cookies": cookie_blob,
            "headless": options.headless,
            "target_count": options.target_count,
            "existing_cart_keys": sorted(options.existing_cart_keys) if options.existing_cart_keys is not None else None,
            "sku_delay_min": options.sku_delay_min,
            "sku_delay_max": options.sku_delay_max,
            "refresh_cart_after": options.refresh_cart_after,
        }

        def relay(progress: dict[str, Any], log: Optional[str]) -> None:
            if options.on_progress is None:
                return
            options.on_progress(
                AcquisitionProgress(
                    total=int(progress.get("total") or 0),
                    current=int(progress.get("current") or 0),
                    succeeded=int(progress.get("success") or 0),
                    failed=int(progress.get("failed") or 0),
                    skipped=int(progress.get("skipped") or 0),
                ),
                log or "",
            )

        data = await self.call("addAllSkusToCart", params, on_progress=relay) or {}
        results = [
            SkuAddResult(
                sku_id=str(r.get("sku_id") or ""),
                properties=r.get("properties") or "",
                status=r.get("status") or "failed",
                error=r.get("error"),
                selections=r.get("selections") or [],
                thumbnail_url=r.get("thumbnail_url"),
            )
            for r in data.get("results") or []
        ]
        products = [p for p in (_product_from_dict(d) for d in data.get("cart_products") or []) if p is not None]
        return AcquisitionResult(
            listing_id=str(listing_id),
            total=int(data.get("total") or len(results)),
            added=int(data.get("added") or 0),
            failed=int(data.get("failed") or 0),
            skipped=int(data.get("skipped") or 0),
            results=results,
            duration=float(data.get("duration") or 0.0),
            cart_products=products,
        )


# Global remote agent client
remote_agent = RemoteAgentClient()
