"""Replicate-backed video generator.

Starts a prediction for the configured model, polls it until it settles and
streams the resulting video into the work directory.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from ..errors import GenerationFailure, GenerationTimeout
from ..models import GenerationConfig
from .base import GeneratedVideo, GenerationRequest, VideoGenerator

logger = logging.getLogger(__name__)

PROXY_ENV_VAR = "REPLICATE_PROXY_URL"
FAILED_STATUSES = ("failed", "canceled")


def resolve_base_url(default: str) -> str:
    """Base URL, or the proxy from REPLICATE_PROXY_URL when set."""
    proxy = os.environ.get(PROXY_ENV_VAR)
    if proxy:
        return f"{proxy.rstrip('/')}/api/replicate/v1"
    return default.rstrip("/")


def extract_output_url(output: Any) -> Optional[str]:
    """Prediction output is either a URL or a list whose first item is one."""
    if isinstance(output, str):
        return output or None
    if isinstance(output, list) and output and isinstance(output[0], str):
        return output[0]
    return None


class ReplicateGenerator(VideoGenerator):
    """Generates videos through the Replicate predictions API.

    Polling: every ``quick_poll_interval_s`` for the first
    ``quick_poll_count`` polls, then every ``poll_interval_s``, giving up
    with GenerationTimeout after ``max_poll_attempts``.
    """

    def __init__(
        self,
        api_token: str,
        work_dir: str,
        config: Optional[GenerationConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.api_token = api_token
        self.work_dir = Path(work_dir)
        self.config = config or GenerationConfig()
        self.base_url = resolve_base_url(self.config.base_url)
        self._transport = transport
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: GenerationConfig, work_dir: str) -> "ReplicateGenerator":
        return cls(os.environ.get(config.api_token_env, ""), work_dir, config)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={
                "Authorization": f"Bearer {self.api_token}",
                "Accept": "application/json",
            },
            timeout=self.config.request_timeout_s,
            transport=self._transport,
            follow_redirects=True,
        )

    def build_input(self, request: GenerationRequest) -> Dict[str, Any]:
        payload = {
            "prompt": request.prompt,
            "duration": request.duration,
            "resolution": self.config.resolution,
            "aspect_ratio": request.aspect_ratio,
            "fps": self.config.fps,
            "camera_fixed": self.config.camera_fixed,
        }
        if request.image_url:
            payload["image"] = request.image_url
        return payload

    async def generate(self, request: GenerationRequest) -> GeneratedVideo:
        if not self.api_token:
            raise GenerationFailure(f"Replicate API token missing (${self.config.api_token_env})")

        async with self._client() as client:
            try:
                prediction_id = await self._start(client, request)
                logger.info(f"[{request.user_id}] Prediction {prediction_id} started for {request.job_id}")

                video_url = await self._wait(client, prediction_id, request.user_id)
                local_path = await self._download(client, video_url, request)
            except httpx.HTTPError as e:
                raise GenerationFailure(f"Replicate request failed: {e}") from e

        return GeneratedVideo(local_path=str(local_path), source_url=video_url)

    async def _start(self, client: httpx.AsyncClient, request: GenerationRequest) -> str:
        response = await client.post(
            f"{self.base_url}/models/{self.config.model}/predictions",
            json={"input": self.build_input(request)},
        )
        if response.is_error:
            raise GenerationFailure(
                f"Prediction request rejected: {response.status_code} {response.text[:200]}"
            )
        prediction_id = response.json().get("id")
        if not prediction_id:
            raise GenerationFailure("Prediction response did not include an id")
        return prediction_id

    async def _wait(self, client: httpx.AsyncClient, prediction_id: str, user_id: str) -> str:
        for attempt in range(self.config.max_poll_attempts):
            response = await client.get(f"{self.base_url}/predictions/{prediction_id}")
            if response.is_error:
                raise GenerationFailure(
                    f"Status check failed: {response.status_code} {response.text[:200]}"
                )

            prediction = response.json()
            status = prediction.get("status")

            if status == "succeeded":
                video_url = extract_output_url(prediction.get("output"))
                if not video_url:
                    raise GenerationFailure("Prediction succeeded without a video URL")
                return video_url
            if status in FAILED_STATUSES:
                raise GenerationFailure(
                    f"Generation {status}: {prediction.get('error') or 'unknown error'}"
                )

            logger.debug(f"[{user_id}] Prediction {prediction_id} {status} ({attempt + 1})")
            if attempt < self.config.quick_poll_count:
                await self._sleep(self.config.quick_poll_interval_s)
            else:
                await self._sleep(self.config.poll_interval_s)

        raise GenerationTimeout(
            f"Prediction {prediction_id} did not finish after {self.config.max_poll_attempts} polls"
        )

    async def _download(
        self, client: httpx.AsyncClient, video_url: str, request: GenerationRequest
    ) -> Path:
        self.work_dir.mkdir(parents=True, exist_ok=True)
        target = self.work_dir / f"{request.user_id}_{request.file_name}"

        try:
            async with client.stream("GET", video_url) as response:
                if response.is_error:
                    raise GenerationFailure(f"Video download failed: {response.status_code}")
                with open(target, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        f.write(chunk)
        except BaseException:
            target.unlink(missing_ok=True)
            raise

        logger.info(f"[{request.user_id}] Downloaded {target.name}")
        return target
