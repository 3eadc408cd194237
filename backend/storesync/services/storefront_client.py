"""Rate-limited storefront GraphQL Admin API client.

WHAT:
    Wrapper for the storefront platform's Admin GraphQL API with:
    - A per-tenant sliding-window request budget (excess requests wait)
    - Exponential backoff with jitter on throttling and transient failures
    - Fail-fast on authentication errors
    - Cursor-based pagination normalized into webhook-shaped records, with
      follow-up queries for orders holding more line items than one page

WHY:
    Poll sync is the only outbound caller. Every tenant shares the platform's
    published limit across all concurrent tasks working for it, so the budget
    lives on the client instance and is keyed by tenant.

    Records are normalized to the same snake_case shape the platform uses for
    webhook payloads (numeric string ids, string money amounts, ISO
    timestamps) so the reconciler validates both paths with one set of rules.

REFERENCES:
    - GraphQL Admin API: https://shopify.dev/docs/api/admin-graphql
    - Rate limits: https://shopify.dev/docs/api/usage/rate-limits
    - Pagination: https://shopify.dev/docs/api/usage/pagination-graphql
    - storesync/services/poll_orchestrator.py (caller)
"""

import asyncio
import logging
import random
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional

import httpx

from storesync.deps import Settings, get_settings
from storesync.models import ResourceTypeEnum

logger = logging.getLogger(__name__)

DEFAULT_API_VERSION = "2024-07"

RETRYABLE_STATUS_CODES = {500, 502, 503, 504}
AUTH_STATUS_CODES = {401, 403}

# Streams the platform can sort by last-modified time. Other streams come back
# in id order, so a partial run must not advance their watermark.
WATERMARK_ORDERED_RESOURCES = frozenset({
    ResourceTypeEnum.products,
    ResourceTypeEnum.customers,
    ResourceTypeEnum.orders,
})


# =============================================================================
# ERRORS
# =============================================================================

class StorefrontAPIError(Exception):
    """Non-retryable API error (bad query, unexpected 4xx)."""

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[List] = None):
        super().__init__(message)
        self.status_code = status_code
        self.errors = errors or []


class RateLimitedError(StorefrontAPIError):
    """Platform kept throttling after all retry attempts."""

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class AuthError(StorefrontAPIError):
    """Credential rejected (401/403). Never retried."""


class TransientError(StorefrontAPIError):
    """Network or 5xx failure that persisted through all retry attempts."""


class _Throttled(Exception):
    def __init__(self, retry_after: Optional[float] = None):
        super().__init__("throttled")
        self.retry_after = retry_after


class _Transient(Exception):
    def __init__(self, detail: str, status_code: Optional[int] = None):
        super().__init__(detail)
        self.status_code = status_code


# =============================================================================
# DATA TYPES
# =============================================================================

@dataclass
class TenantCredentials:
    """What the client needs to call the API on a tenant's behalf."""
    tenant_id: uuid.UUID
    shop_domain: str
    access_token: str = field(repr=False)


@dataclass
class FetchCursor:
    """Position in a resource stream.

    `since` is the resume watermark (None means full sync), `after` is the
    platform's opaque page cursor.
    """
    since: Optional[datetime] = None
    after: Optional[str] = None


@dataclass
class FetchPage:
    records: List[Dict[str, Any]]
    next_cursor: Optional[str] = None


# =============================================================================
# BACKOFF STATE MACHINE
# =============================================================================

@dataclass
class RetryPolicy:
    """Exponential backoff parameters shared by throttle and transient retries."""
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 0.25

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.RETRY_MAX_ATTEMPTS,
            base_delay=settings.RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.RETRY_MAX_DELAY_SECONDS,
            jitter=settings.RETRY_JITTER,
        )

    def compute_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay after failed attempt number `attempt` (1-based).

        Honors a server-provided Retry-After when it is longer than the
        exponential step. The result never exceeds `max_delay`.
        """
        delay = self.base_delay * (2 ** max(attempt - 1, 0))
        if retry_after is not None:
            delay = max(delay, retry_after)
        delay = min(delay, self.max_delay)
        if self.jitter > 0:
            delay += random.uniform(0, delay * self.jitter)
        return min(delay, self.max_delay)


class BackoffState:
    """Attempt counter for one logical request.

    idle (attempt=0) -> attempting -> (success | waiting -> attempting | exhausted)
    """

    def __init__(self, policy: RetryPolicy):
        self.policy = policy
        self.attempt = 0
        self.last_delay = 0.0

    def start_attempt(self) -> int:
        self.attempt += 1
        return self.attempt

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.policy.max_attempts

    def next_delay(self, retry_after: Optional[float] = None) -> float:
        self.last_delay = self.policy.compute_delay(self.attempt, retry_after)
        return self.last_delay


# =============================================================================
# REQUEST BUDGET
# =============================================================================

class RequestBudget:
    """Sliding-window request budget for a single tenant.

    WHAT: Allows `max_requests` sends per rolling `window_seconds`
    WHY: Callers over budget wait their turn (asyncio.Lock is FIFO) instead of
         failing, so bursts from concurrent tasks are smoothed, not dropped.
    """

    def __init__(self, max_requests: int, window_seconds: float):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._sent: Deque[float] = deque()
        self._lock = asyncio.Lock()

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                now = time.monotonic()
                while self._sent and now - self._sent[0] >= self.window_seconds:
                    self._sent.popleft()

                if len(self._sent) < self.max_requests:
                    self._sent.append(now)
                    return

                wait_time = self.window_seconds - (now - self._sent[0])
                logger.debug("[STOREFRONT_CLIENT] Budget exhausted, waiting %.3fs", wait_time)
                await asyncio.sleep(wait_time)

    @property
    def in_window(self) -> int:
        return len(self._sent)


# =============================================================================
# QUERIES
# =============================================================================

_PRODUCTS_QUERY = """
query GetProducts($cursor: String, $limit: Int!, $query: String) {
    products(first: $limit, after: $cursor, query: $query, sortKey: UPDATED_AT) {
        edges {
            node {
                id
                title
                handle
                status
                vendor
                productType
                tags
                totalInventory
                createdAt
                updatedAt
                variants(first: 1) {
                    edges {
                        node {
                            price
                        }
                    }
                }
            }
        }
        pageInfo {
            hasNextPage
            endCursor
        }
    }
}
"""

_CUSTOMERS_QUERY = """
query GetCustomers($cursor: String, $limit: Int!, $query: String) {
    customers(first: $limit, after: $cursor, query: $query, sortKey: UPDATED_AT) {
        edges {
            node {
                id
                email
                firstName
                lastName
                phone
                state
                verifiedEmail
                tags
                numberOfOrders
                amountSpent {
                    amount
                }
                createdAt
                updatedAt
            }
        }
        pageInfo {
            hasNextPage
            endCursor
        }
    }
}
"""

_LINE_ITEM_FIELDS = """
fragment LineItemFields on LineItem {
    id
    title
    variantTitle
    sku
    quantity
    originalUnitPriceSet {
        shopMoney {
            amount
        }
    }
    totalDiscountSet {
        shopMoney {
            amount
        }
    }
    product {
        id
    }
    variant {
        id
    }
}
"""

_ORDERS_QUERY = """
query GetOrders($cursor: String, $limit: Int!, $query: String) {
    orders(first: $limit, after: $cursor, query: $query, sortKey: UPDATED_AT) {
        edges {
            node {
                id
                name
                email
                createdAt
                updatedAt
                cancelledAt
                displayFinancialStatus
                displayFulfillmentStatus
                totalPriceSet {
                    shopMoney {
                        amount
                        currencyCode
                    }
                }
                subtotalPriceSet {
                    shopMoney {
                        amount
                    }
                }
                totalTaxSet {
                    shopMoney {
                        amount
                    }
                }
                totalDiscountsSet {
                    shopMoney {
                        amount
                    }
                }
                customer {
                    id
                }
                lineItems(first: 250) {
                    edges {
                        node {
                            ...LineItemFields
                        }
                    }
                    pageInfo {
                        hasNextPage
                        endCursor
                    }
                }
            }
        }
        pageInfo {
            hasNextPage
            endCursor
        }
    }
}
""" + _LINE_ITEM_FIELDS

# Follow-up pages for orders with more line items than fit in the first page
_ORDER_LINE_ITEMS_QUERY = """
query GetOrderLineItems($id: ID!, $cursor: String) {
    order(id: $id) {
        lineItems(first: 250, after: $cursor) {
            edges {
                node {
                    ...LineItemFields
                }
            }
            pageInfo {
                hasNextPage
                endCursor
            }
        }
    }
}
""" + _LINE_ITEM_FIELDS

# Abandoned checkouts cannot be sorted by update time.
_CHECKOUTS_QUERY = """
query GetAbandonedCheckouts($cursor: String, $limit: Int!, $query: String) {
    abandonedCheckouts(first: $limit, after: $cursor, query: $query, sortKey: ID) {
        edges {
            node {
                id
                createdAt
                updatedAt
                completedAt
                totalPriceSet {
                    shopMoney {
                        amount
                        currencyCode
                    }
                }
                customer {
                    id
                    email
                }
                lineItems(first: 250) {
                    edges {
                        node {
                            id
                        }
                    }
                }
            }
        }
        pageInfo {
            hasNextPage
            endCursor
        }
    }
}
"""


def _legacy_id(gid: Optional[str]) -> Optional[str]:
    """gid://shopify/Order/450789469 -> "450789469" (webhooks use the numeric form)."""
    if not gid:
        return None
    return str(gid).rsplit("/", 1)[-1]


def _money(price_set: Optional[Dict[str, Any]]) -> Optional[str]:
    if not price_set:
        return None
    return (price_set.get("shopMoney") or price_set).get("amount")


def _lower(value: Optional[str]) -> Optional[str]:
    return value.lower() if value else None


def _edges(connection: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not connection:
        return []
    return [edge.get("node") or {} for edge in connection.get("edges", [])]


def _normalize_product(node: Dict[str, Any]) -> Dict[str, Any]:
    variants = _edges(node.get("variants"))
    return {
        "id": _legacy_id(node.get("id")),
        "title": node.get("title"),
        "handle": node.get("handle"),
        "status": _lower(node.get("status")),
        "vendor": node.get("vendor"),
        "product_type": node.get("productType"),
        "tags": node.get("tags"),
        "total_inventory": node.get("totalInventory"),
        "price": variants[0].get("price") if variants else None,
        "created_at": node.get("createdAt"),
        "updated_at": node.get("updatedAt"),
    }


def _normalize_customer(node: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": _legacy_id(node.get("id")),
        "email": node.get("email"),
        "first_name": node.get("firstName"),
        "last_name": node.get("lastName"),
        "phone": node.get("phone"),
        "state": _lower(node.get("state")),
        "verified_email": node.get("verifiedEmail"),
        "tags": node.get("tags"),
        "orders_count": node.get("numberOfOrders"),
        "total_spent": _money(node.get("amountSpent")),
        "created_at": node.get("createdAt"),
        "updated_at": node.get("updatedAt"),
    }


def _normalize_order(node: Dict[str, Any]) -> Dict[str, Any]:
    line_items = []
    for li_node in _edges(node.get("lineItems")):
        line_items.append({
            "id": _legacy_id(li_node.get("id")),
            "title": li_node.get("title"),
            "variant_title": li_node.get("variantTitle"),
            "sku": li_node.get("sku"),
            "quantity": li_node.get("quantity"),
            "price": _money(li_node.get("originalUnitPriceSet")),
            "total_discount": _money(li_node.get("totalDiscountSet")),
            "product_id": _legacy_id((li_node.get("product") or {}).get("id")),
            "variant_id": _legacy_id((li_node.get("variant") or {}).get("id")),
        })

    # "#1001" -> 1001
    order_name = node.get("name") or ""
    order_number = None
    if order_name.startswith("#") and order_name[1:].isdigit():
        order_number = int(order_name[1:])

    total_price_set = node.get("totalPriceSet") or {}
    customer = node.get("customer")

    return {
        "id": _legacy_id(node.get("id")),
        "name": order_name or None,
        "order_number": order_number,
        "email": node.get("email"),
        "currency": (total_price_set.get("shopMoney") or {}).get("currencyCode"),
        "total_price": _money(total_price_set),
        "subtotal_price": _money(node.get("subtotalPriceSet")),
        "total_tax": _money(node.get("totalTaxSet")),
        "total_discounts": _money(node.get("totalDiscountsSet")),
        "financial_status": _lower(node.get("displayFinancialStatus")),
        "fulfillment_status": _lower(node.get("displayFulfillmentStatus")),
        "cancelled_at": node.get("cancelledAt"),
        "customer": {"id": _legacy_id(customer.get("id"))} if customer else None,
        "created_at": node.get("createdAt"),
        "updated_at": node.get("updatedAt"),
        "line_items": line_items,
    }


def _normalize_checkout(node: Dict[str, Any]) -> Dict[str, Any]:
    total_price_set = node.get("totalPriceSet") or {}
    customer = node.get("customer")
    return {
        "id": _legacy_id(node.get("id")),
        "event_type": "checkout",
        "email": customer.get("email") if customer else None,
        "customer": {"id": _legacy_id(customer.get("id"))} if customer else None,
        "currency": (total_price_set.get("shopMoney") or {}).get("currencyCode"),
        "total_price": _money(total_price_set),
        "line_items": _edges(node.get("lineItems")),
        "completed_at": node.get("completedAt"),
        "created_at": node.get("createdAt"),
        "updated_at": node.get("updatedAt"),
    }


@dataclass(frozen=True)
class _ResourceQuery:
    root: str
    query: str
    normalize: Callable[[Dict[str, Any]], Dict[str, Any]]


RESOURCE_QUERIES: Dict[ResourceTypeEnum, _ResourceQuery] = {
    ResourceTypeEnum.products: _ResourceQuery("products", _PRODUCTS_QUERY, _normalize_product),
    ResourceTypeEnum.customers: _ResourceQuery("customers", _CUSTOMERS_QUERY, _normalize_customer),
    ResourceTypeEnum.orders: _ResourceQuery("orders", _ORDERS_QUERY, _normalize_order),
    ResourceTypeEnum.events: _ResourceQuery("abandonedCheckouts", _CHECKOUTS_QUERY, _normalize_checkout),
}


# =============================================================================
# CLIENT
# =============================================================================

class StorefrontClient:
    """GraphQL client shared by all poll runs in a process.

    WHAT: Sends queries on behalf of any tenant, charging each request to that
          tenant's budget and retrying through a bounded backoff
    WHY: One instance per worker process means concurrent runs for the same
         tenant (scheduled and manual) draw from a single budget

    Usage:
        client = StorefrontClient()
        page = await client.fetch(credentials, ResourceTypeEnum.orders, FetchCursor(since=watermark))
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.api_version = self.settings.STORE_API_VERSION or DEFAULT_API_VERSION
        self.retry_policy = RetryPolicy.from_settings(self.settings)
        self._transport = transport
        self._budgets: Dict[uuid.UUID, RequestBudget] = {}

    def budget_for(self, tenant_id: uuid.UUID) -> RequestBudget:
        budget = self._budgets.get(tenant_id)
        if budget is None:
            budget = RequestBudget(
                self.settings.RATE_LIMIT_REQUESTS,
                self.settings.RATE_LIMIT_WINDOW_SECONDS,
            )
            self._budgets[tenant_id] = budget
        return budget

    def _endpoint(self, shop_domain: str) -> str:
        return f"https://{shop_domain}/admin/api/{self.api_version}/graphql.json"

    async def fetch(
        self,
        credentials: TenantCredentials,
        resource_type: ResourceTypeEnum,
        cursor: FetchCursor,
    ) -> FetchPage:
        """Fetch one page of a resource stream.

        Args:
            credentials: Tenant domain and bearer token
            resource_type: Which collection to read
            cursor: Resume watermark and page cursor

        Returns:
            FetchPage with normalized records in source order and the next
            page cursor (None on the last page)

        Raises:
            RateLimitedError, AuthError, TransientError, StorefrontAPIError
        """
        spec = RESOURCE_QUERIES[resource_type]

        query_filter = None
        if cursor.since:
            since_str = cursor.since.strftime("%Y-%m-%dT%H:%M:%SZ")
            query_filter = f"updated_at:>='{since_str}'"

        variables = {
            "cursor": cursor.after,
            "limit": self.settings.POLL_PAGE_SIZE,
            "query": query_filter,
        }

        data = await self.execute(credentials, spec.query, variables)
        connection = data.get(spec.root) or {}
        page_info = connection.get("pageInfo") or {}

        nodes = _edges(connection)
        if resource_type == ResourceTypeEnum.orders:
            for node in nodes:
                await self._complete_line_items(credentials, node)

        records = [spec.normalize(node) for node in nodes]
        next_cursor = page_info.get("endCursor") if page_info.get("hasNextPage") else None

        logger.info(
            "[STOREFRONT_CLIENT] Fetched %d %s for %s (has_next=%s)",
            len(records), resource_type.value, credentials.shop_domain, bool(next_cursor),
        )
        return FetchPage(records=records, next_cursor=next_cursor)

    async def _complete_line_items(self, credentials: TenantCredentials, order_node: Dict[str, Any]) -> None:
        """Append the remaining line item pages to an order node in place.

        WHY: Line items are replaced as a set on merge, so an order carrying
             only its first page would lose every item past it.
        """
        connection = order_node.get("lineItems") or {}
        page_info = connection.get("pageInfo") or {}
        pages = 1

        while page_info.get("hasNextPage"):
            data = await self.execute(
                credentials,
                _ORDER_LINE_ITEMS_QUERY,
                {"id": order_node.get("id"), "cursor": page_info.get("endCursor")},
            )
            order = data.get("order")
            if order is None:
                raise TransientError(f"Order {order_node.get('id')} not found while paging line items")

            more = order.get("lineItems") or {}
            connection.setdefault("edges", []).extend(more.get("edges", []))
            page_info = more.get("pageInfo") or {}
            pages += 1

        if pages > 1:
            logger.info(
                "[STOREFRONT_CLIENT] Order %s line items fetched in %d pages for %s",
                _legacy_id(order_node.get("id")), pages, credentials.shop_domain,
            )

    async def execute(
        self,
        credentials: TenantCredentials,
        query: str,
        variables: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Execute a GraphQL query with budget, backoff and error classification.

        Returns:
            The `data` object of the GraphQL response
        """
        state = BackoffState(self.retry_policy)
        budget = self.budget_for(credentials.tenant_id)

        while True:
            attempt = state.start_attempt()
            await budget.acquire()

            try:
                return await self._send_once(credentials, query, variables)

            except _Throttled as e:
                if state.exhausted:
                    logger.warning(
                        "[STOREFRONT_CLIENT] Still throttled after %d attempts for %s",
                        attempt, credentials.shop_domain,
                    )
                    raise RateLimitedError(
                        f"Throttled after {attempt} attempts",
                        retry_after=e.retry_after,
                        status_code=429,
                    ) from None
                delay = state.next_delay(e.retry_after)
                logger.warning(
                    "[STOREFRONT_CLIENT] Throttled for %s, waiting %.2fs (attempt %d/%d)",
                    credentials.shop_domain, delay, attempt, self.retry_policy.max_attempts,
                )

            except _Transient as e:
                if state.exhausted:
                    raise TransientError(
                        f"Failed after {attempt} attempts: {e}",
                        status_code=e.status_code,
                    ) from None
                delay = state.next_delay()
                logger.warning(
                    "[STOREFRONT_CLIENT] Transient error for %s: %s, waiting %.2fs (attempt %d/%d)",
                    credentials.shop_domain, e, delay, attempt, self.retry_policy.max_attempts,
                )

            await asyncio.sleep(delay)

    async def _send_once(
        self,
        credentials: TenantCredentials,
        query: str,
        variables: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        headers = {
            "X-Shopify-Access-Token": credentials.access_token,
            "Content-Type": "application/json",
        }
        payload: Dict[str, Any] = {"query": query}
        if variables:
            payload["variables"] = variables

        try:
            async with httpx.AsyncClient(
                timeout=self.settings.HTTP_TIMEOUT_SECONDS,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    self._endpoint(credentials.shop_domain),
                    json=payload,
                    headers=headers,
                )
        except httpx.RequestError as e:
            raise _Transient(f"{type(e).__name__}: {e}") from e

        status_code = response.status_code

        if status_code in AUTH_STATUS_CODES:
            logger.error(
                "[STOREFRONT_CLIENT] Credential rejected for %s (HTTP %d)",
                credentials.shop_domain, status_code,
            )
            raise AuthError(f"Credential rejected (HTTP {status_code})", status_code=status_code)

        if status_code == 429:
            raise _Throttled(_parse_retry_after(response.headers.get("Retry-After")))

        if status_code in RETRYABLE_STATUS_CODES:
            raise _Transient(f"HTTP {status_code}", status_code=status_code)

        if status_code >= 400:
            raise StorefrontAPIError(f"HTTP {status_code}: {response.text[:200]}", status_code=status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise _Transient(f"Invalid JSON response (HTTP {status_code})", status_code=status_code) from e
        if not isinstance(data, dict):
            raise _Transient(f"Unexpected response body (HTTP {status_code})", status_code=status_code)

        errors = data.get("errors")
        if errors:
            if isinstance(errors, str):
                errors = [{"message": errors}]
            if any(_is_throttle_error(err) for err in errors):
                raise _Throttled()

            error_messages = [err.get("message", str(err)) for err in errors]
            logger.error("[STOREFRONT_CLIENT] GraphQL errors: %s", error_messages)
            raise StorefrontAPIError(
                f"GraphQL errors: {', '.join(error_messages)}",
                status_code=status_code,
                errors=errors,
            )

        return data.get("data") or {}


def _is_throttle_error(error: Dict[str, Any]) -> bool:
    code = (error.get("extensions") or {}).get("code")
    if code == "THROTTLED":
        return True
    return "throttled" in str(error.get("message", "")).lower()


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None
