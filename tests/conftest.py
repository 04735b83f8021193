import io
import os
import sys
import tempfile
from pathlib import Path

import pytest
from PIL import Image

# Ensure project root is on sys.path so `marketplace` package can be imported
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

# Keep the app-level upload mount out of the working directory
os.environ.setdefault("UPLOAD_DIR", tempfile.mkdtemp(prefix="marketplace-uploads-"))

from marketplace.database import EmbeddingRecord, EmbeddingStore
from marketplace.embedder import EmbeddingProviderError
from marketplace.uploads import ImageUpload, UploadStorage


def make_image_bytes(size=(64, 48), color=(200, 30, 90), mode="RGB", image_format="PNG") -> bytes:
    image = Image.new(mode, size, color)
    byte_io = io.BytesIO()
    image.save(byte_io, format=image_format)
    return byte_io.getvalue()


def make_product(product_id, name=None, price=10.0):
    return {"id": product_id, "name": name or f"Product {product_id}", "price": price, "image": None}


class FakeProvider:
    """Embedding provider double returning a fixed vector, or always failing."""

    def __init__(self, vector=None, fail=False):
        self.vector = vector
        self.fail = fail
        self.calls = []

    async def embed(self, image_bytes):
        self.calls.append(image_bytes)
        if self.fail:
            raise EmbeddingProviderError("remote model unavailable")
        return list(self.vector)


class FakeStore:
    """In-memory embedding store with switchable failures for each ranking tier."""

    def __init__(self, records=None, fail_all=False, fail_approx=False, fail_sample=False, fail_insert=False):
        self.records = list(records or [])
        self.fail_all = fail_all
        self.fail_approx = fail_approx
        self.fail_sample = fail_sample
        self.fail_insert = fail_insert
        self.approx_calls = []

    def insert(self, record):
        EmbeddingStore.validate(record)
        if self.fail_insert:
            raise RuntimeError("store unavailable")
        record.embedding_id = len(self.records) + 1
        self.records.append(record)
        return record.embedding_id

    def all(self):
        if self.fail_all:
            raise RuntimeError("full scan unavailable")
        return list(self.records)

    def by_product(self, product_id):
        return next((r for r in self.records if r.product_id == product_id), None)

    def approximate_rank(self, query, k=10):
        self.approx_calls.append((list(query), k))
        if self.fail_approx:
            raise RuntimeError("aggregation unavailable")
        head = [query[i] if i < len(query) else 0.0 for i in range(5)]
        scored = []
        for record in self.records:
            if not record.has_product:
                continue
            emb = [record.embedding[i] if i < len(record.embedding) else 0.0 for i in range(5)]
            distance = sum((e - q) ** 2 for e, q in zip(emb, head)) ** 0.5
            scored.append((record, 1 - distance))
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[:k]

    def sample(self, k=10):
        if self.fail_sample:
            raise RuntimeError("store unreachable")
        return [r for r in self.records if r.has_product][:k]


def make_record(embedding_id, embedding, product_id=None, with_product=True):
    product_id = product_id if product_id is not None else embedding_id
    return EmbeddingRecord(
        embedding_id=embedding_id,
        product_id=product_id,
        embedding=list(embedding),
        image_url=f"/uploads/{embedding_id}.jpg",
        product=make_product(product_id) if with_product else None,
    )


@pytest.fixture
def upload_storage(tmp_path):
    return UploadStorage(str(tmp_path / "uploads"), max_upload_size=5 * 1024 * 1024)


@pytest.fixture
def png_upload():
    return ImageUpload(filename="query.png", content_type="image/png", data=make_image_bytes())
