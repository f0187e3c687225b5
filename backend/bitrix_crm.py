"""
Bitrix24 CRM REST client for funnel analytics.

Read-only access to leads, deals, users, lead sources and deal funnels with:
- full pagination over the `next` cursor (with a full-page fallback)
- per-fetch deduplication by ID
- shared rate limiting
- one credential refresh + retry when the portal reports an expired token

Works either through an incoming webhook URL or through an OAuth local
application (see token_manager.BitrixTokenManager).
"""

import asyncio
import functools
import logging
import time
from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional

import httpx

logger = logging.getLogger(__name__)

# Bitrix24 REST API timeout
BITRIX_TIMEOUT = 30.0

# Bitrix24 rate limiting: max 2 requests per second per portal
BITRIX_MAX_REQUESTS_PER_SECOND = 2
BITRIX_RATE_LIMIT_WINDOW = 1.0  # seconds

# Bitrix list methods always return pages of 50
BITRIX_PAGE_SIZE = 50

MAX_LEADS = 10000
MAX_DEALS = 5000
MAX_USERS = 5000

CONTACT_BATCH_SIZE = 50

AUTH_EXPIRED_ERRORS = {"expired_token", "invalid_token", "NO_AUTH_FOUND"}

LEAD_SELECT = [
    "ID", "TITLE", "STATUS_ID", "SOURCE_ID", "SOURCE_DESCRIPTION",
    "ASSIGNED_BY_ID", "DATE_CREATE", "DATE_MODIFY", "OPPORTUNITY",
    "CONTACT_ID",
]
DEAL_SELECT = [
    "ID", "TITLE", "STAGE_ID", "CATEGORY_ID", "OPPORTUNITY", "CURRENCY_ID",
    "DATE_CREATE", "DATE_MODIFY", "ASSIGNED_BY_ID", "CONTACT_ID",
    "COMPANY_ID", "LEAD_ID",
]
USER_SELECT = ["ID", "NAME", "LAST_NAME", "EMAIL", "ACTIVE", "WORK_POSITION"]


class BitrixAPIError(Exception):
    """Custom exception for Bitrix24 API errors"""
    pass


class BitrixAuthExpiredError(BitrixAPIError):
    """The portal rejected the access token (HTTP 401 / expired_token)."""
    pass


class BitrixRateLimiter:
    """Rate limiter for Bitrix24 API calls to prevent hitting rate limits"""

    def __init__(self, max_requests: int = BITRIX_MAX_REQUESTS_PER_SECOND, window: float = BITRIX_RATE_LIMIT_WINDOW):
        self.max_requests = max_requests
        self.window = window
        self._requests = defaultdict(list)
        self._lock = asyncio.Lock()

    async def acquire(self, key: str):
        """Wait until we can make a request without hitting rate limit"""
        async with self._lock:
            now = time.time()
            # Clean old entries
            self._requests[key] = [t for t in self._requests[key] if now - t < self.window]

            if len(self._requests[key]) >= self.max_requests:
                oldest = min(self._requests[key])
                wait_time = self.window - (now - oldest)
                if wait_time > 0:
                    logger.debug(f"Bitrix rate limit: waiting {wait_time:.2f}s")
                    await asyncio.sleep(wait_time)
                    now = time.time()
                    self._requests[key] = [t for t in self._requests[key] if now - t < self.window]

            self._requests[key].append(now)


# Global rate limiter instance
_bitrix_rate_limiter = BitrixRateLimiter()


def retry_on_auth_expired(func):
    """
    Run a client request; if the portal reports an expired token, refresh the
    credentials once and run it again. A second failure propagates.
    Clients without a token manager (webhook mode) never retry.
    """
    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        manager = self.token_manager
        stale_token = manager.access_token if manager else None
        try:
            return await func(self, *args, **kwargs)
        except BitrixAuthExpiredError:
            if manager is None:
                raise
            logger.info("Bitrix access token expired, refreshing and retrying once")
            await manager.refresh(stale_token=stale_token)
            return await func(self, *args, **kwargs)
    return wrapper


def _dedupe(records: Iterable[dict], seen: set) -> List[dict]:
    unique = []
    for record in records:
        record_id = str(record.get("ID", ""))
        if record_id and record_id in seen:
            continue
        seen.add(record_id)
        unique.append(record)
    return unique


class BitrixCRMClient:
    """
    Client for the Bitrix24 CRM REST API.

    Webhook mode: pass the incoming webhook URL as `endpoint`.
    OAuth mode: pass a BitrixTokenManager; the endpoint and `auth` token are
    taken from it on every request.
    """

    def __init__(
        self,
        endpoint: str = "",
        token_manager=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        rate_limiter: Optional[BitrixRateLimiter] = None,
    ):
        self.webhook_url = endpoint.rstrip("/")
        self.token_manager = token_manager
        self._transport = transport
        self._rate_limiter = rate_limiter or _bitrix_rate_limiter

    def _base_url(self) -> str:
        if self.token_manager is not None:
            return self.token_manager.client_endpoint.rstrip("/")
        return self.webhook_url

    @retry_on_auth_expired
    async def _call_raw(self, method: str, params: dict = None) -> dict:
        """Make a REST call and return the full envelope ({result, next, total, ...})."""
        base_url = self._base_url()
        if not base_url:
            raise BitrixAPIError("Bitrix24 portal is not configured")

        await self._rate_limiter.acquire(base_url)

        url = f"{base_url}/{method}.json"
        payload = dict(params or {})
        if self.token_manager is not None:
            payload["auth"] = await self.token_manager.get_access_token()

        try:
            async with httpx.AsyncClient(timeout=BITRIX_TIMEOUT, transport=self._transport) as client:
                response = await client.post(url, json=payload)
        except httpx.TimeoutException:
            raise BitrixAPIError("Connection timeout - please check your Bitrix24 portal")
        except httpx.RequestError as e:
            raise BitrixAPIError(f"Connection error: {str(e)}")

        try:
            data = response.json()
        except ValueError:
            data = {}

        error_code = data.get("error") if isinstance(data, dict) else None

        if response.status_code == 401 or error_code in AUTH_EXPIRED_ERRORS:
            raise BitrixAuthExpiredError(f"Authentication expired for {method}")

        if response.status_code != 200:
            logger.error(f"Bitrix24 API error [{method}]: {response.status_code} - {response.text[:500]}")
            raise BitrixAPIError(f"API error: {response.status_code}")

        if error_code:
            error_msg = data.get("error_description", error_code)
            logger.error(f"Bitrix24 error [{method}]: {error_msg}")
            raise BitrixAPIError(error_msg)

        return data if isinstance(data, dict) else {"result": data}

    async def _call(self, method: str, params: dict = None) -> Any:
        """Make a REST call and return only `result`."""
        envelope = await self._call_raw(method, params)
        return envelope.get("result", envelope)

    async def _paginate(self, method: str, params: dict, max_records: int) -> List[dict]:
        """
        Fetch every page of a list method.

        Follows the `next` cursor; if it is missing but the page was full,
        continues at start + 50. Stops on a short page or at max_records.
        Records are deduplicated by ID.
        """
        records: List[dict] = []
        seen: set = set()
        start = 0
        page = 0

        while True:
            envelope = await self._call_raw(method, {**params, "start": start})
            result = envelope.get("result", [])
            batch = result if isinstance(result, list) else []
            unique = _dedupe(batch, seen)
            records.extend(unique)
            page += 1

            logger.debug(
                f"{method} page {page}: {len(batch)} records, {len(unique)} new, {len(records)} total"
            )

            if "next" in envelope:
                start = envelope["next"]
            elif len(batch) == BITRIX_PAGE_SIZE:
                start += BITRIX_PAGE_SIZE
            else:
                break

            if start >= max_records:
                logger.warning(f"{method} pagination cap reached at {max_records}")
                break

        return records

    # ==================== Leads ====================

    async def fetch_leads(self, filters: Optional[dict] = None, select: Optional[List[str]] = None) -> List[Dict]:
        """All leads matching `filters` (Bitrix filter syntax), newest first."""
        filters = dict(filters or {})
        params = {
            "filter": filters,
            "select": select or LEAD_SELECT,
            "order": {"DATE_CREATE": "DESC"},
        }
        leads = await self._paginate("crm.lead.list", params, MAX_LEADS)

        # Some portals ignore SOURCE_ID in the filter; enforce it locally
        expected_source = filters.get("SOURCE_ID")
        if isinstance(expected_source, str):
            wrong = [lead for lead in leads if lead.get("SOURCE_ID") != expected_source]
            if wrong:
                logger.warning(
                    f"{len(wrong)} leads returned with a source other than {expected_source}, filtering locally"
                )
                leads = [lead for lead in leads if lead.get("SOURCE_ID") == expected_source]

        logger.info(f"Fetched {len(leads)} leads")
        return leads

    async def fetch_leads_by_contact_ids(
        self, contact_ids: Iterable[str], batch_size: int = CONTACT_BATCH_SIZE
    ) -> List[Dict]:
        """
        Leads for the given contacts. Contacts are queried in batches of
        `batch_size` concurrent requests; results are merged and deduplicated.
        """
        ids = [cid for cid in dict.fromkeys(str(c) for c in contact_ids) if cid and cid != "0"]
        merged: List[Dict] = []
        seen: set = set()

        for i in range(0, len(ids), batch_size):
            batch = ids[i:i + batch_size]
            logger.info(f"Loading leads for contacts {i + 1}-{i + len(batch)} of {len(ids)}")
            results = await asyncio.gather(
                *(self.fetch_leads({"CONTACT_ID": contact_id}) for contact_id in batch)
            )
            for contact_leads in results:
                merged.extend(_dedupe(contact_leads, seen))

        logger.info(f"Loaded {len(merged)} leads for {len(ids)} contacts")
        return merged

    # ==================== Deals ====================

    async def fetch_deals(self, filters: Optional[dict] = None, max_records: int = MAX_DEALS) -> List[Dict]:
        """All deals matching `filters`, newest first."""
        params = {
            "filter": dict(filters or {}),
            "select": DEAL_SELECT,
            "order": {"DATE_CREATE": "DESC"},
        }
        deals = await self._paginate("crm.deal.list", params, max_records)
        logger.info(f"Fetched {len(deals)} deals")
        return deals

    async def fetch_deal_categories(self) -> List[Dict]:
        """Deal funnels (categories) configured on the portal."""
        params = {"order": {"SORT": "ASC"}, "select": ["ID", "NAME", "SORT", "IS_LOCKED"]}
        return await self._paginate("crm.dealcategory.list", params, MAX_DEALS)

    # ==================== Directory ====================

    async def fetch_users(self, filters: Optional[dict] = None) -> List[Dict]:
        """All portal users, active or not."""
        params = {"select": USER_SELECT, "filter": dict(filters or {})}
        users = await self._paginate("user.get", params, MAX_USERS)
        logger.info(f"Fetched {len(users)} users")
        return users

    async def fetch_sources(self) -> List[Dict]:
        """Lead sources as [{code, name}]."""
        result = await self._call("crm.status.list", {"filter": {"ENTITY_ID": "SOURCE"}})
        statuses = result if isinstance(result, list) else []
        return [
            {"code": str(s.get("STATUS_ID")), "name": s.get("NAME") or f"Source {s.get('STATUS_ID')}"}
            for s in statuses
            if s.get("STATUS_ID")
        ]


def create_bitrix_client(settings, transport: Optional[httpx.AsyncBaseTransport] = None) -> BitrixCRMClient:
    """Build a client from Settings: OAuth when configured, webhook otherwise."""
    rate_limiter = None
    if settings.bitrix_max_requests_per_second != BITRIX_MAX_REQUESTS_PER_SECOND:
        rate_limiter = BitrixRateLimiter(max_requests=settings.bitrix_max_requests_per_second)

    if settings.uses_oauth:
        from token_manager import BitrixTokenManager
        manager = BitrixTokenManager.from_settings(settings, transport=transport)
        return BitrixCRMClient(token_manager=manager, transport=transport, rate_limiter=rate_limiter)

    if not settings.bitrix_webhook_url:
        logger.warning("Neither BITRIX_WEBHOOK_URL nor OAuth credentials are configured")
    return BitrixCRMClient(settings.bitrix_webhook_url, transport=transport, rate_limiter=rate_limiter)
