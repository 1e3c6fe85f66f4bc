"""
External collaborators of the engine.

Provides unified interfaces for artifact generation, artifact storage
and template resolution, with one concrete implementation each. The
engine assumes generate/persist are safe to retry: a task reclaimed
from a dead worker runs them again.
"""

import base64
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import httpx

from taskengine.config import settings
from taskengine.core.exceptions import GenerationError, StorageError

logger = logging.getLogger(__name__)


class GenerationMode(str, Enum):
    MODEL_CONFIG = "model_config"
    PROMPT = "prompt"
    PRODUCT_SHOT = "product_shot"


@dataclass
class GenerationRequest:
    """Everything the generation service needs for one image."""

    mode: GenerationMode
    image_base64: str
    prompt: str | None = None
    aspect_ratio: str | None = None
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class Artifact:
    """Generated image bytes."""

    data: bytes
    mime_type: str = "image/png"

    @classmethod
    def from_base64(cls, encoded: str, mime_type: str = "image/png") -> "Artifact":
        """Decode plain base64 or a data: URL."""
        if encoded.startswith("data:"):
            header, encoded = encoded.split(",", 1)
            mime_type = header[5:].split(";", 1)[0] or mime_type
        return cls(data=base64.b64decode(encoded), mime_type=mime_type)


@dataclass
class StoredArtifact:
    """Reference to a persisted artifact."""

    url: str
    thumbnail_url: str | None = None


class GenerationCollaborator(ABC):
    """Artifact creation. Raises with a human-readable message on failure."""

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> Artifact:
        pass


class StorageCollaborator(ABC):
    """Artifact persistence."""

    @abstractmethod
    async def persist(self, artifact: Artifact, owner_id: str, artifact_id: str) -> StoredArtifact:
        pass


class TemplateResolver(ABC):
    """Variable substitution into prompt templates."""

    @abstractmethod
    def resolve(self, template: str, variables: dict[str, Any]) -> str:
        pass


class PlaceholderTemplateResolver(TemplateResolver):
    """Replaces every {name} with its string value; non-string values are skipped."""

    def resolve(self, template: str, variables: dict[str, Any]) -> str:
        for name, value in variables.items():
            if isinstance(value, str):
                template = re.sub(r"\{" + re.escape(name) + r"\}", lambda _: value, template)
        return template


class HttpGenerationCollaborator(GenerationCollaborator):
    """
    Generation over HTTP.

    POSTs the request as JSON to {base_url}/generate and expects
    {"image": "<base64>", "mime_type": "..."}; error responses carry
    {"error": "<message>"}. The timeout is this client's own, the
    engine imposes none.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url or settings.generation_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.generation_api_key
        self.timeout = timeout or settings.generation_timeout_seconds
        self._client = client

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def generate(self, request: GenerationRequest) -> Artifact:
        payload = {
            "mode": request.mode.value,
            "image": request.image_base64,
            "prompt": request.prompt,
            "aspect_ratio": request.aspect_ratio,
            "parameters": request.parameters,
        }

        try:
            if self._client is not None:
                response = await self._client.post(
                    f"{self.base_url}/generate", json=payload, headers=self._headers(), timeout=self.timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(
                        f"{self.base_url}/generate", json=payload, headers=self._headers()
                    )
        except httpx.HTTPError as e:
            raise GenerationError(f"Generation service unreachable: {e}") from e

        if response.status_code >= 400:
            raise GenerationError(self._error_message(response))

        data = response.json()
        image = data.get("image")
        if not image:
            raise GenerationError("Generation service returned no image")

        return Artifact.from_base64(image, data.get("mime_type") or "image/png")

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            message = response.json().get("error")
        except ValueError:
            message = None
        return message or f"Generation failed with status {response.status_code}"


class LocalArtifactStorage(StorageCollaborator):
    """
    Local filesystem storage.

    Stores artifacts as:
    {artifact_dir}/
      └── generated/
          └── {owner_id}/
              └── {artifact_id}.{ext}
    """

    EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp"}

    def __init__(self, base_path: str | None = None, base_url: str | None = None):
        self.base_path = Path(base_path or settings.artifact_dir)
        self.base_url = (base_url or settings.artifact_base_url).rstrip("/")
        self.base_path.mkdir(parents=True, exist_ok=True)

    def build_key(self, artifact: Artifact, owner_id: str, artifact_id: str) -> str:
        ext = self.EXTENSIONS.get(artifact.mime_type, "bin")
        return f"generated/{owner_id}/{artifact_id}.{ext}"

    async def persist(self, artifact: Artifact, owner_id: str, artifact_id: str) -> StoredArtifact:
        key = self.build_key(artifact, owner_id, artifact_id)
        full_path = self.base_path / key

        try:
            full_path.parent.mkdir(parents=True, exist_ok=True)
            with open(full_path, "wb") as f:
                f.write(artifact.data)
        except OSError as e:
            raise StorageError(f"Failed to store artifact: {e}") from e

        logger.info(f"Artifact saved: {key}")
        # No thumbnail pipeline: thumbnails are resized on demand by the CDN
        return StoredArtifact(url=f"{self.base_url}/{key}", thumbnail_url=None)
