"""LiteLLM proxy client for registering forwarded model backends."""

from types import TracebackType
from typing import Any

import httpx

from ..common.exceptions import BridgeError
from ..common.logging import get_logger
from ..common.settings import Settings
from ..common.utils import mask_sensitive_data

logger = get_logger(__name__)

DEFAULT_MODEL_API_KEY = "dummy"


class LiteLLMBridge:
    """Registers and unregisters models on a LiteLLM proxy.

    Example:
        >>> async with LiteLLMBridge("http://localhost:4000", "sk-1234") as bridge:
        ...     model_id = await bridge.register("llama", "http://127.0.0.1:8000/v1")
    """

    def __init__(
        self,
        base_url: str = "http://localhost:4000",
        master_key: str = "sk-1234",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the bridge.

        Args:
            base_url: LiteLLM proxy base URL
            master_key: Proxy master key sent as bearer token
            timeout: Request timeout in seconds
            client: Preconfigured client (tests pass one with a mock transport)
        """
        self.base_url = base_url.rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": f"Bearer {master_key}"},
            timeout=timeout,
        )
        logger.debug(
            "LiteLLM bridge configured",
            base_url=self.base_url,
            master_key=mask_sensitive_data(master_key),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "LiteLLMBridge":
        return cls(
            base_url=settings.litellm_base_url,
            master_key=settings.litellm_master_key,
            timeout=settings.litellm_timeout,
        )

    async def __aenter__(self) -> "LiteLLMBridge":
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self, method: str, path: str, json: dict[str, Any] | None = None
    ) -> httpx.Response:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.HTTPError as e:
            raise BridgeError(f"LiteLLM request {method} {path} failed: {e}") from e

        if response.is_error:
            raise BridgeError(
                f"LiteLLM {method} {path} returned {response.status_code}: "
                f"{response.text}"
            )
        return response

    async def register(
        self, model_name: str, api_base: str, api_key: str | None = None
    ) -> str:
        """Register ``api_base`` as an OpenAI-compatible backend for ``model_name``.

        Args:
            model_name: Public model name on the proxy
            api_base: Base URL of the forwarded endpoint
            api_key: Backend API key; a placeholder is sent when omitted

        Returns:
            Model id assigned by the proxy (falls back to the model name)

        Raises:
            BridgeError: If the proxy is unreachable or rejects the model
        """
        payload = {
            "model_name": model_name,
            "litellm_params": {
                "model": f"openai/{model_name}",
                "api_base": api_base,
                "api_key": api_key or DEFAULT_MODEL_API_KEY,
            },
        }
        logger.info("Registering model", model_name=model_name, api_base=api_base)
        response = await self._request("POST", "/model/new", json=payload)

        try:
            body = response.json()
        except ValueError as e:
            raise BridgeError(f"LiteLLM returned invalid JSON: {e}") from e

        model_info = body.get("model_info") or {}
        model_id = model_info.get("id") or body.get("model_id") or model_name
        logger.info("Model registered", model_name=model_name, model_id=model_id)
        return str(model_id)

    async def unregister(self, model_id: str) -> None:
        """Delete a model from the proxy.

        Raises:
            BridgeError: If the proxy is unreachable or rejects the deletion
        """
        logger.info("Unregistering model", model_id=model_id)
        await self._request("POST", "/model/delete", json={"id": model_id})
        logger.info("Model unregistered", model_id=model_id)

    async def list_models(self) -> list[dict[str, Any]]:
        """List models known to the proxy."""
        response = await self._request("GET", "/model/info")
        try:
            data = response.json().get("data")
        except ValueError as e:
            raise BridgeError(f"LiteLLM returned invalid JSON: {e}") from e
        return list(data or [])

    async def healthcheck(self) -> bool:
        """Return True if the proxy answers its health endpoint. Never raises."""
        try:
            response = await self._client.get("/health")
        except httpx.HTTPError as e:
            logger.warning("LiteLLM health check failed", error=str(e))
            return False
        return response.is_success
