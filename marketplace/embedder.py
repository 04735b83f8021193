"""
Image embedding generation.

The primary path posts the image to a hosted vision model and expects a flat
numeric array back. When that fails, a local feature vector is built from
cheap image statistics so that search keeps working without the remote model.
"""

import base64
import io
import logging
import random
from dataclasses import dataclass
from numbers import Real
from typing import Any, List, Optional

import httpx
import numpy as np
from PIL import Image

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_DIM = 512

# Scale constants for the statistics vector
DIMENSION_SCALE = 1000.0
CHANNEL_SCALE = 10.0
MAX_SAMPLE_VALUE = 255.0

SOURCE_REMOTE = "remote"
SOURCE_STATISTICS = "statistics"
SOURCE_RANDOM = "random"


class EmbeddingProviderError(Exception):
    """Raised when the remote embedding call fails or returns a malformed payload."""


@dataclass
class EmbeddingResult:
    vector: List[float]
    source: str

    @property
    def degraded(self) -> bool:
        """True for the random placeholder vector, which carries no visual meaning."""
        return self.source == SOURCE_RANDOM

    def __len__(self):
        return len(self.vector)


def flatten_embedding(payload: Any) -> List[float]:
    """
    Validate a remote response body and return it as a flat list of floats.

    A nested `[[...]]` body is reduced to its first row.
    """
    if not isinstance(payload, list):
        raise EmbeddingProviderError(f"Invalid embedding format received: {type(payload).__name__}")
    if payload and isinstance(payload[0], list):
        payload = payload[0]
    if not payload:
        raise EmbeddingProviderError("Empty embedding received")
    if not all(isinstance(x, Real) and not isinstance(x, bool) for x in payload):
        raise EmbeddingProviderError("Embedding contains non-numeric values")
    try:
        values = [float(x) for x in payload]
    except OverflowError as e:
        raise EmbeddingProviderError(f"Embedding value out of range: {e}") from e
    if not np.isfinite(np.asarray(values)).all():
        raise EmbeddingProviderError("Embedding contains NaN or infinite values")
    return values


class RemoteEmbeddingProvider:
    """
    Client for a hosted feature-extraction endpoint (Hugging Face inference API style).
    """

    def __init__(self,
                 token: Optional[str],
                 model_name: str = "google/vit-base-patch16-224",
                 api_url: str = "https://api-inference.huggingface.co/models",
                 timeout: float = 10.0,
                 client: Optional[httpx.AsyncClient] = None):
        self.token = token
        self.model_name = model_name
        self.endpoint = f"{api_url.rstrip('/')}/{model_name}"
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def embed(self, image_bytes: bytes) -> List[float]:
        """
        Generate an embedding for already preprocessed image bytes.

        Raises:
            EmbeddingProviderError: on missing token, transport failure or
                timeout, non-2xx status, or a body that is not a numeric array.
        """
        if not self.token:
            raise EmbeddingProviderError("Embedding API token is not configured")

        payload = {"inputs": base64.b64encode(image_bytes).decode("ascii")}
        headers = {
            "Authorization": f"Bearer {self.token}",
            "Content-Type": "application/json",
        }

        try:
            response = await self.client.post(self.endpoint, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise EmbeddingProviderError(f"Embedding request failed: {e}") from e

        if not response.is_success:
            raise EmbeddingProviderError(f"Embedding API returned status {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise EmbeddingProviderError("Embedding API returned a non-JSON body") from e

        embedding = flatten_embedding(body)
        logger.info(f"Generated remote embedding of length {len(embedding)} with {self.model_name}")
        return embedding

    async def aclose(self):
        await self.client.aclose()


def image_statistics_vector(image_bytes: bytes) -> List[float]:
    """Build the unpadded statistics features: size, channel count, per-channel stats."""
    with Image.open(io.BytesIO(image_bytes)) as image:
        width, height = image.size
        channels = len(image.getbands())
        pixels = np.asarray(image, dtype=np.float64).reshape(-1, channels)

    features = [width / DIMENSION_SCALE, height / DIMENSION_SCALE, channels / CHANNEL_SCALE]
    for channel in pixels.T:
        features.extend([
            float(channel.mean()) / MAX_SAMPLE_VALUE,
            float(channel.std()) / MAX_SAMPLE_VALUE,
            float(channel.min()) / MAX_SAMPLE_VALUE,
            float(channel.max()) / MAX_SAMPLE_VALUE,
        ])
    return features


def random_embedding(dim: int = DEFAULT_EMBEDDING_DIM, rng: Optional[random.Random] = None) -> List[float]:
    rng = rng or random.Random()
    return [rng.uniform(-1.0, 1.0) for _ in range(dim)]


def fallback_embed(image_bytes: bytes,
                   target_dim: int = DEFAULT_EMBEDDING_DIM,
                   rng: Optional[random.Random] = None) -> EmbeddingResult:
    """
    Local embedding that never raises.

    Returns the statistics vector padded with zeros or truncated to
    `target_dim`. If the image cannot be decoded, returns a random vector
    in [-1, 1] tagged with the "random" source.
    """
    try:
        features = image_statistics_vector(image_bytes)
    except Exception as e:
        logger.warning(f"Statistics embedding failed, using random placeholder vector: {e}")
        return EmbeddingResult(vector=random_embedding(target_dim, rng), source=SOURCE_RANDOM)

    features = features[:target_dim]
    features.extend([0.0] * (target_dim - len(features)))
    return EmbeddingResult(vector=features, source=SOURCE_STATISTICS)
