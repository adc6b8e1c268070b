"""
lorabooth — inference.py
─────────────────────────────────────────────────────────────────
Replicate client (HTTP API via httpx)

Built ONCE at startup from cfg and handed to the job gateway and the
webhook reconciler — nothing here reads the environment.

  create_training()   → LoRA trainer prediction, webhook → /train
  create_image()      → FLUX prediction with LoRA, webhook → /image
  generate_preview()  → synchronous prediction + bounded poll
                        (used right after a training succeeds)

Usage:
    client = ReplicateClient.from_config(cfg)
    pred   = await client.create_image(prompt, lora_url)
    pred.request_id   # correlation key for the webhook
─────────────────────────────────────────────────────────────────
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from lorabooth.core.config import Config, cfg
from lorabooth.core.errors import MalformedCallback, ProviderUnavailable
from lorabooth.models.webhook import ProviderStatus, output_ref, parse_output

logger = logging.getLogger("lorabooth.inference")

REQUEST_TIMEOUT = 30   # seconds per HTTP call

WEBHOOK_PATHS = {
    "training": "/replicate/webhook/train",
    "image":    "/replicate/webhook/image",
}

TRAINING_INPUT = {
    "steps":         1000,
    "batch_size":    4,
    "learning_rate": 1e-4,
    "resolution":    1024,
}

IMAGE_INPUT = {
    "lora_scale":          1,
    "num_inference_steps": 28,
    "guidance_scale":      7.5,
}


@dataclass
class Prediction:
    request_id:   str
    response_url: Optional[str]


def normalize_webhook_base(base: str) -> str:
    """Force https and trim trailing slashes."""
    base = base.strip()
    if not base:
        return ""
    if base.startswith("http://"):
        base = "https://" + base[len("http://"):]
    elif not base.startswith("https://"):
        base = f"https://{base}"
    return base.rstrip("/")


# ─────────────────────────────────────────────
# Client
# ─────────────────────────────────────────────
class ReplicateClient:

    def __init__(
        self,
        api_token:        str,
        webhook_base_url: str = "",
        base_url:         str = "https://api.replicate.com/v1",
        training_version: str = Config.TRAINING_VERSION,
        image_model:      str = Config.IMAGE_MODEL,
        preview_prompt:   str = Config.PREVIEW_PROMPT,
        poll_interval:    float = 1.0,
        max_wait:         float = 300.0,
        http:             Optional[httpx.AsyncClient] = None,
    ):
        self.api_token        = api_token
        self.webhook_base_url = normalize_webhook_base(webhook_base_url)
        self.base_url         = base_url.rstrip("/")
        self.training_version = training_version
        self.image_model      = image_model
        self.preview_prompt   = preview_prompt
        self.poll_interval    = poll_interval
        self.max_wait         = max_wait
        self.http             = http or httpx.AsyncClient(timeout=REQUEST_TIMEOUT)

        if not self.webhook_base_url:
            logger.warning("⚠️  WEBHOOK_BASE_URL not set — predictions will not call back")

    @classmethod
    def from_config(cls, config: Config = cfg, http: Optional[httpx.AsyncClient] = None):
        return cls(
            api_token        = config.REPLICATE_API_TOKEN,
            webhook_base_url = config.WEBHOOK_BASE_URL,
            base_url         = config.REPLICATE_BASE_URL,
            training_version = config.TRAINING_VERSION,
            image_model      = config.IMAGE_MODEL,
            preview_prompt   = config.PREVIEW_PROMPT,
            poll_interval    = config.PREVIEW_POLL_INTERVAL,
            max_wait         = config.PREVIEW_MAX_WAIT,
            http             = http,
        )

    async def aclose(self):
        await self.http.aclose()

    # ─── Plumbing ──────────────────────────────

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_token}",
            "Content-Type":  "application/json",
        }

    def webhook_url(self, kind: str) -> Optional[str]:
        if not self.webhook_base_url:
            return None
        return f"{self.webhook_base_url}{WEBHOOK_PATHS[kind]}"

    def _prediction_request(self, model: str, inputs: Dict[str, Any]):
        """
        "owner/name:versionhash" → POST /predictions with version
        "owner/name"             → POST /models/owner/name/predictions
        """
        if ":" in model:
            _, version = model.split(":", 1)
            return f"{self.base_url}/predictions", {"version": version, "input": inputs}
        return f"{self.base_url}/models/{model}/predictions", {"input": inputs}

    async def _create(self, model: str, inputs: Dict[str, Any],
                      webhook_kind: Optional[str] = None) -> Prediction:
        url, body = self._prediction_request(model, inputs)

        webhook = self.webhook_url(webhook_kind) if webhook_kind else None
        if webhook:
            body["webhook"] = webhook
            body["webhook_events_filter"] = ["completed"]

        try:
            resp = await self.http.post(url, headers=self._headers, json=body)
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"Replicate unreachable: {e}") from e

        if resp.status_code not in (200, 201):
            raise ProviderUnavailable(f"Replicate create failed [{resp.status_code}]: {resp.text[:200]}")

        data = resp.json()
        request_id = data.get("id")
        if not request_id:
            raise ProviderUnavailable(f"Replicate returned no prediction id: {data}")

        return Prediction(
            request_id   = request_id,
            response_url = (data.get("urls") or {}).get("get"),
        )

    async def get_prediction(self, request_id: str) -> Dict[str, Any]:
        try:
            resp = await self.http.get(
                f"{self.base_url}/predictions/{request_id}", headers=self._headers
            )
        except httpx.HTTPError as e:
            raise ProviderUnavailable(f"Replicate unreachable: {e}") from e

        if resp.status_code != 200:
            raise ProviderUnavailable(f"Replicate status check failed [{resp.status_code}]")
        return resp.json()

    # ─── Jobs ──────────────────────────────────

    async def create_training(self, zip_url: str, trigger_word: str) -> Prediction:
        inputs = {
            "input_images": zip_url,
            "trigger_word": trigger_word,
            "prompt":       f"A photo of {trigger_word}",
            **TRAINING_INPUT,
        }
        prediction = await self._create(self.training_version, inputs, "training")
        logger.info(f"Training submitted: {prediction.request_id}")
        return prediction

    async def create_image(self, prompt: str, lora_url: str) -> Prediction:
        inputs = {"prompt": prompt, "lora_url": lora_url, **IMAGE_INPUT}
        prediction = await self._create(self.image_model, inputs, "image")
        logger.info(f"Image submitted: {prediction.request_id}")
        return prediction

    # ─── Preview (sync, bounded) ───────────────

    async def generate_preview(
        self,
        lora_url: str,
        cancel:   Optional[asyncio.Event] = None,
    ) -> str:
        """
        Generate one headshot from freshly trained weights and wait for it.

        Polls every poll_interval seconds, gives up after max_wait, and
        stops early when `cancel` is set (app shutdown).
        Raises ProviderUnavailable on failure, timeout or cancellation.
        """
        inputs = {"prompt": self.preview_prompt, "lora_url": lora_url, **IMAGE_INPUT}
        prediction = await self._create(self.image_model, inputs)

        loop     = asyncio.get_running_loop()
        deadline = loop.time() + self.max_wait

        while True:
            data   = await self.get_prediction(prediction.request_id)
            status = ProviderStatus.parse(data.get("status"))

            if status == ProviderStatus.SUCCEEDED:
                try:
                    return output_ref(parse_output(data.get("output"), allow_nested=False))
                except MalformedCallback as e:
                    raise ProviderUnavailable(f"Preview has no image URL: {e}") from e

            if status is not None and status.is_failure:
                raise ProviderUnavailable(f"Preview {prediction.request_id} {status.value}: {data.get('error')}")

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ProviderUnavailable(
                    f"Preview {prediction.request_id} timed out after {self.max_wait}s"
                )

            logger.debug(f"Preview {prediction.request_id} status: {data.get('status')}, waiting...")
            if await _wait_or_cancel(cancel, min(self.poll_interval, remaining)):
                raise ProviderUnavailable(f"Preview {prediction.request_id} cancelled")


async def _wait_or_cancel(cancel: Optional[asyncio.Event], delay: float) -> bool:
    """Sleep `delay` seconds. True if `cancel` fired first."""
    if cancel is None:
        await asyncio.sleep(delay)
        return False
    try:
        await asyncio.wait_for(cancel.wait(), timeout=delay)
        return True
    except asyncio.TimeoutError:
        return False
