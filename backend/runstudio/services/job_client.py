import httpx
import logging
from datetime import datetime, timezone
from typing import Optional, Dict, List, Any, Protocol
from urllib.parse import quote

from runstudio.core.config import settings
from runstudio.core.errors import (
    DecodingError,
    InsufficientCreditsError,
    NetworkError,
    ServerError,
    UnauthorizedError,
)
from runstudio.schemas import CreditBalance, Generation, InputSchema, ModelInfo

logger = logging.getLogger(__name__)


class JobClient(Protocol):
    """The network boundary the execution controller and credit ledger depend on."""

    async def submit(self, model_id: str, input: Dict[str, Any], title: Optional[str] = None,
                     tags: Optional[List[str]] = None, organization_id: Optional[str] = None) -> Generation: ...

    async def fetch_status(self, generation_id: str) -> Generation: ...

    async def cancel_generation(self, generation_id: str) -> Generation: ...

    async def update_generation(self, generation_id: str, is_favorite: Optional[bool] = None,
                                title: Optional[str] = None, tags: Optional[List[str]] = None) -> Generation: ...

    async def list_generations(self, model_id: Optional[str] = None, page: int = 1, limit: int = 20,
                               status: Optional[str] = None, favorite: Optional[bool] = None) -> List[Generation]: ...

    async def fetch_balance(self) -> CreditBalance: ...


def _model_path(model_id: str) -> str:
    # Model ids look like "owner/name"; the whole id is one path segment
    return quote(model_id, safe="")


class RunClient:
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        credits_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key or settings.API_KEY
        self.base_url = (base_url or settings.API_URL).rstrip("/")
        self.credits_url = (credits_url or settings.CREDITS_API_URL).rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT
        self.transport = transport
        self.headers = {
            "accept": "application/json",
            "content-type": "application/json",
        }
        if self.api_key:
            self.headers["authorization"] = f"Bearer {self.api_key}"

    async def _request(self, method: str, endpoint: str, data: Optional[Dict] = None,
                       params: Optional[Dict] = None, base_url: Optional[str] = None,
                       requires_auth: bool = True):
        if requires_auth and not self.api_key:
            raise UnauthorizedError()

        url = f"{base_url or self.base_url}{endpoint}"
        logger.info("Request: %s %s", method, url)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.request(
                    method,
                    url,
                    headers=self.headers,
                    json=data,
                    params=params
                )
        except httpx.TransportError as e:
            logger.error("Network error %s %s: %s", method, endpoint, e)
            raise NetworkError(f"Network error: {e}", cause=e)

        logger.debug("Response status: %s (%d bytes)", response.status_code, len(response.content))

        if response.status_code == 401:
            raise UnauthorizedError()
        if response.status_code == 402:
            details = self._error_body(response).get("details") or {}
            raise InsufficientCreditsError(
                required=details.get("required", 0) or 0,
                available=details.get("available", 0) or 0,
            )
        if response.status_code >= 400:
            body = self._error_body(response)
            message = body.get("error") or body.get("message") or f"Request failed with status {response.status_code}"
            logger.error("Error %s %s: %s", method, endpoint, message)
            raise ServerError(message, status_code=response.status_code)

        try:
            body = response.json()
        except ValueError as e:
            logger.error("Undecodable response from %s %s: %s", method, endpoint, response.text[:200])
            raise DecodingError(str(e))

        if isinstance(body, dict) and body.get("success") is False:
            raise ServerError(body.get("error") or body.get("message") or "Request failed")
        return body

    @staticmethod
    def _error_body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    @staticmethod
    def _data(body: Any, what: str) -> Any:
        if not isinstance(body, dict) or "data" not in body:
            raise DecodingError(f"missing data in {what} response")
        return body["data"]

    @staticmethod
    def _parse(model, payload: Any, what: str):
        try:
            return model.model_validate(payload)
        except ValueError as e:
            raise DecodingError(f"invalid {what}: {e}")

    # === Models ===

    async def get_model(self, model_id: str) -> ModelInfo:
        body = await self._request("GET", f"/models/{_model_path(model_id)}", requires_auth=False)
        return self._parse(ModelInfo, self._data(body, "model"), "model")

    async def get_model_schema(self, model_id: str) -> InputSchema:
        body = await self._request("GET", f"/models/{_model_path(model_id)}/schema", requires_auth=False)
        data = self._data(body, "schema")
        return self._parse(InputSchema, data.get("inputSchema") if isinstance(data, dict) else None, "input schema")

    # === Runs ===

    async def submit(self, model_id: str, input: Dict[str, Any], title: Optional[str] = None,
                     tags: Optional[List[str]] = None, organization_id: Optional[str] = None) -> Generation:
        """
        POST /models/:modelId/run
        The backend only echoes a summary, so the returned Generation is
        completed with the submitted input and metadata.
        """
        payload = {
            "input": input,
            "organizationId": organization_id,
            "title": title,
            "tags": tags,
        }
        body = await self._request("POST", f"/models/{_model_path(model_id)}/run", data=payload)
        data = self._data(body, "run")
        now = datetime.now(timezone.utc).isoformat()
        record = {
            "id": data.get("id"),
            "modelId": data.get("modelId") or model_id,
            "status": data.get("status"),
            "input": input,
            "output": data.get("output"),
            "outputUrl": data.get("outputUrl"),
            "outputUrls": data.get("outputUrls"),
            "errorMessage": data.get("errorMessage"),
            "creditsUsed": data.get("creditsUsed", body.get("credits_deducted")),
            "executionTimeMs": data.get("executionTimeMs"),
            "title": title,
            "tags": tags,
            "organizationId": organization_id,
            "categorySlug": (data.get("model") or {}).get("category"),
            "createdAt": now,
            "updatedAt": now,
        }
        generation = self._parse(Generation, record, "generation")
        logger.info("Submitted generation %s for model %s (status=%s)", generation.id, model_id, generation.status.value)
        return generation

    async def fetch_status(self, generation_id: str) -> Generation:
        body = await self._request("GET", f"/models/user/generations/{generation_id}")
        return self._parse(Generation, self._data(body, "generation"), "generation")

    async def update_generation(self, generation_id: str, is_favorite: Optional[bool] = None,
                                title: Optional[str] = None, tags: Optional[List[str]] = None) -> Generation:
        updates: Dict[str, Any] = {}
        if is_favorite is not None:
            updates["isFavorite"] = is_favorite
        if title is not None:
            updates["title"] = title
        if tags is not None:
            updates["tags"] = tags
        body = await self._request("PATCH", f"/models/user/generations/{generation_id}", data=updates)
        return self._parse(Generation, self._data(body, "generation"), "generation")

    async def cancel_generation(self, generation_id: str) -> Generation:
        body = await self._request("POST", f"/models/user/generations/{generation_id}/cancel")
        return self._parse(Generation, self._data(body, "generation"), "generation")

    async def list_generations(self, model_id: Optional[str] = None, page: int = 1, limit: int = 20,
                               status: Optional[str] = None, favorite: Optional[bool] = None) -> List[Generation]:
        params: Dict[str, Any] = {"page": page, "limit": limit}
        if model_id:
            params["modelId"] = model_id
        if status:
            params["status"] = status
        if favorite:
            params["favorite"] = "true"
        body = await self._request("GET", "/models/user/generations", params=params)
        return [self._parse(Generation, g, "generation") for g in self._data(body, "generations") or []]

    # === Credits ===

    async def fetch_balance(self) -> CreditBalance:
        body = await self._request("GET", "/api/credits/balance", base_url=self.credits_url)
        balance = self._parse(CreditBalance, self._data(body, "balance"), "credit balance")
        logger.info("Credit balance: %d total credits", balance.totalCredits)
        return balance
