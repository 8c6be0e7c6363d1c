"""
链上服务（账本）客户端：mint / 续费 / 校验 token / 创建合集
合约细节由链上服务负责，这里只当作不透明的 HTTP API。
注意：链上调用不保证可安全重试，每次请求带客户端生成的 Idempotency-Key，由调用方决定是否重试。
"""
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from community_pass.core.config import settings

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """链上调用失败（HTTP 错误、超时、返回失败状态）"""

    def __init__(self, reason: str, *, status_code: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


@dataclass(frozen=True)
class MintReceipt:
    token_id: str
    transaction_hash: str
    block_number: Optional[int] = None


@dataclass(frozen=True)
class RenewReceipt:
    transaction_hash: str
    block_number: Optional[int] = None


@dataclass(frozen=True)
class CollectionReceipt:
    contract_address: str
    transaction_hash: str
    block_number: Optional[int] = None


@dataclass(frozen=True)
class TokenStatus:
    valid: bool
    owner: Optional[str] = None


class LedgerClient(Protocol):
    """订阅核心依赖的链上能力接口"""

    async def mint(self, wallet_address: str, contract_address: str, *, idempotency_key: str) -> MintReceipt: ...

    async def renew(self, token_id: str, contract_address: str, *, idempotency_key: str) -> RenewReceipt: ...

    async def verify(self, token_id: str, contract_address: str) -> TokenStatus: ...

    async def create_collection(
        self, owner_wallet: str, name: str, symbol: str, *, idempotency_key: str
    ) -> CollectionReceipt: ...


def new_idempotency_key() -> str:
    return uuid.uuid4().hex


class HttpLedgerClient:
    """基于 httpx 的链上服务客户端"""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.LEDGER_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.LEDGER_API_KEY
        self.timeout = timeout or settings.LEDGER_TIMEOUT_SECONDS
        self._transport = transport

    def _headers(self, idempotency_key: Optional[str] = None) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, url, headers=self._headers(idempotency_key), json=payload)
                response.raise_for_status()
                data = response.json()
        except httpx.TimeoutException as e:
            logger.error("链上服务超时 %s %s: %s", method, path, e)
            raise LedgerError(f"ledger timeout after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            logger.error("链上服务 HTTP 错误 %s %s: %s - %s", method, path, e.response.status_code, e.response.text)
            raise LedgerError(_error_reason(e.response), status_code=e.response.status_code) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("链上服务调用异常 %s %s: %s", method, path, e)
            raise LedgerError(str(e) or e.__class__.__name__) from e

        if not isinstance(data, dict):
            raise LedgerError(f"unexpected ledger response: {data!r}")
        if data.get("status") == "failed" or data.get("error"):
            raise LedgerError(str(data.get("error") or "transaction failed"))
        return data

    async def mint(self, wallet_address: str, contract_address: str, *, idempotency_key: str) -> MintReceipt:
        data = await self._request(
            "POST",
            "/v1/mint",
            {"wallet_address": wallet_address, "contract_address": contract_address},
            idempotency_key=idempotency_key,
        )
        return MintReceipt(
            token_id=str(data.get("token_id", "")),
            transaction_hash=_require(data, "transaction_hash"),
            block_number=data.get("block_number"),
        )

    async def renew(self, token_id: str, contract_address: str, *, idempotency_key: str) -> RenewReceipt:
        data = await self._request(
            "POST",
            "/v1/renew",
            {"token_id": token_id, "contract_address": contract_address},
            idempotency_key=idempotency_key,
        )
        return RenewReceipt(
            transaction_hash=_require(data, "transaction_hash"),
            block_number=data.get("block_number"),
        )

    async def verify(self, token_id: str, contract_address: str) -> TokenStatus:
        data = await self._request("GET", f"/v1/tokens/{contract_address}/{token_id}")
        return TokenStatus(valid=bool(data.get("valid")), owner=data.get("owner"))

    async def create_collection(
        self, owner_wallet: str, name: str, symbol: str, *, idempotency_key: str
    ) -> CollectionReceipt:
        data = await self._request(
            "POST",
            "/v1/collections",
            {"owner_wallet": owner_wallet, "name": name, "symbol": symbol},
            idempotency_key=idempotency_key,
        )
        return CollectionReceipt(
            contract_address=_require(data, "contract_address"),
            transaction_hash=_require(data, "transaction_hash"),
            block_number=data.get("block_number"),
        )

    async def ping(self) -> bool:
        """健康检查用"""
        async with httpx.AsyncClient(timeout=5.0, transport=self._transport) as client:
            response = await client.get(f"{self.base_url}/health", headers=self._headers())
            return response.status_code < 500


def _require(data: Dict[str, Any], key: str) -> str:
    value = data.get(key)
    if not value:
        raise LedgerError(f"ledger response missing {key}")
    return str(value)


def _error_reason(response: httpx.Response) -> str:
    try:
        body = response.json()
        if isinstance(body, dict) and body.get("error"):
            return str(body["error"])
    except ValueError:
        pass
    return f"ledger HTTP {response.status_code}"
