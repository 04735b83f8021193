"""
Database utilities for managing products and image embeddings.
Handles PostgreSQL operations for the embedding store and the product catalog join.
"""

import psycopg2
from psycopg2.extras import RealDictCursor
from typing import List, Dict, Optional, Any, Sequence, Tuple
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
import logging
import os

logger = logging.getLogger(__name__)

# Number of leading components compared by the database-side approximation
APPROX_COMPONENTS = 5

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS products (
    product_id SERIAL PRIMARY KEY,
    name TEXT NOT NULL,
    price NUMERIC(12, 2) NOT NULL DEFAULT 0,
    image_url TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

-- product_id deliberately carries no foreign key: orphaned records are tolerated
CREATE TABLE IF NOT EXISTS image_embeddings (
    embedding_id SERIAL PRIMARY KEY,
    product_id INTEGER NOT NULL,
    embedding DOUBLE PRECISION[] NOT NULL,
    image_url TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_image_embeddings_product_id ON image_embeddings (product_id);
"""


class ValidationError(ValueError):
    """Raised when a record fails validation before it reaches the database."""


class StorageError(Exception):
    """Raised when the database cannot be reached or a query fails."""


@dataclass
class DatabaseConfig:
    """Database configuration.

    Values default to environment variables when not provided so that
    creating `DatabaseConfig()` picks up settings from `.env` or the
    environment (matching `marketplace/config.py`).
    """
    host: str = None
    port: int = None
    dbname: str = None
    user: str = None
    password: str = None

    def __post_init__(self):
        # Read from environment if values not explicitly provided
        self.host = self.host or os.getenv("DB_HOST", "localhost")
        self.port = int(self.port or os.getenv("DB_PORT", 5432))
        self.dbname = self.dbname or os.getenv("DB_NAME", "marketplace")
        self.user = self.user or os.getenv("DB_USER", "postgres")
        self.password = self.password or os.getenv("DB_PASSWORD", "postgres")

    def get_connection_string(self) -> str:
        return f"host={self.host} port={self.port} dbname={self.dbname} user={self.user} password={self.password}"


@dataclass
class EmbeddingRecord:
    """A stored image embedding, optionally joined with its product."""
    product_id: Optional[int]
    embedding: List[float]
    image_url: str
    embedding_id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    product: Optional[Dict[str, Any]] = field(default=None, compare=False)

    @property
    def has_product(self) -> bool:
        return self.product is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.embedding_id,
            "productId": self.product_id,
            "embedding": list(self.embedding) if isinstance(self.embedding, (list, tuple)) else self.embedding,
            "imageUrl": self.image_url,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


def parse_vector(vector_data: Any) -> List[float]:
    """Parse an embedding column value into a list of floats."""
    if vector_data is None:
        return []
    if isinstance(vector_data, str):
        # Postgres array literal '{1,2,3}' or JSON-like '[1,2,3]'
        vector_str = vector_data.strip('{}[]')
        if not vector_str:
            return []
        return [float(x.strip()) for x in vector_str.split(',')]
    return [float(x) for x in vector_data]


def _product_from_row(row: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    if row.get("joined_product_id") is None:
        return None
    price = row.get("product_price")
    return {
        "id": row["joined_product_id"],
        "name": row.get("product_name"),
        "price": float(price) if isinstance(price, Decimal) else price,
        "image": row.get("product_image_url"),
    }


def record_from_row(row: Dict[str, Any]) -> EmbeddingRecord:
    """Build an EmbeddingRecord from a joined image_embeddings/products row."""
    return EmbeddingRecord(
        embedding_id=row["embedding_id"],
        product_id=row["product_id"],
        embedding=parse_vector(row["embedding"]),
        image_url=row["image_url"],
        created_at=row.get("created_at"),
        updated_at=row.get("updated_at"),
        product=_product_from_row(row),
    )


_RECORD_COLUMNS = """
    e.embedding_id, e.product_id, e.embedding, e.image_url, e.created_at, e.updated_at,
    p.product_id AS joined_product_id, p.name AS product_name,
    p.price AS product_price, p.image_url AS product_image_url
"""


class DatabaseManager:
    """
    Manages database connections for the visual search system.
    """

    def __init__(self, config: DatabaseConfig = None):
        self.config = config or DatabaseConfig()

    @contextmanager
    def get_connection(self):
        """Context manager for database connections."""
        conn = None
        try:
            conn = psycopg2.connect(self.config.get_connection_string())
            yield conn
        except psycopg2.Error as e:
            if conn:
                conn.rollback()
            logger.error(f"Database error: {e}")
            raise StorageError(str(e)) from e
        except Exception as e:
            if conn:
                conn.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            if conn:
                conn.close()

    def execute_script(self, script: str):
        """Execute a multi-statement SQL script."""
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(script)
            conn.commit()


class ProductCatalog:
    """
    Read access to the product catalog, plus a small insert helper for seeding.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    def find_by_id(self, product_id: int) -> Optional[Dict[str, Any]]:
        """Get a product by ID; a miss returns None rather than raising."""
        with self.db_manager.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("""
                    SELECT product_id, name, price, image_url
                    FROM products
                    WHERE product_id = %s
                """, (product_id,))
                row = cur.fetchone()
                if not row:
                    return None
                return _product_from_row({
                    "joined_product_id": row["product_id"],
                    "product_name": row["name"],
                    "product_price": row["price"],
                    "product_image_url": row["image_url"],
                })

    def insert_product(self, name: str, price: float = 0, image_url: Optional[str] = None) -> int:
        """Insert a new product and return its ID."""
        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO products (name, price, image_url)
                    VALUES (%s, %s, %s)
                    RETURNING product_id;
                """, (name, price, image_url))

                product_id = cur.fetchone()[0]
                conn.commit()
                return product_id

    def get_products_without_embeddings(self) -> List[Dict[str, Any]]:
        """Get products that have an image but no stored embedding yet."""
        with self.db_manager.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute("""
                    SELECT p.product_id, p.name, p.image_url
                    FROM products p
                    WHERE p.image_url IS NOT NULL
                    AND p.image_url <> ''
                    AND NOT EXISTS (
                        SELECT 1 FROM image_embeddings e WHERE e.product_id = p.product_id
                    )
                    ORDER BY p.product_id
                """)
                return [dict(row) for row in cur.fetchall()]


class EmbeddingStore:
    """
    Flat append log of image embeddings. Records are never updated in place.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db_manager = db_manager

    @staticmethod
    def validate(record: EmbeddingRecord):
        if record.product_id is None or record.product_id == "":
            raise ValidationError("Product ID is required")
        if not record.embedding:
            raise ValidationError("Embedding must not be empty")
        if not record.image_url:
            raise ValidationError("Image URL is required")

    def insert(self, record: EmbeddingRecord) -> int:
        """Insert an embedding record and return its ID."""
        self.validate(record)
        embedding_list = [float(x) for x in record.embedding]

        with self.db_manager.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    INSERT INTO image_embeddings (product_id, embedding, image_url)
                    VALUES (%s, %s::double precision[], %s)
                    RETURNING embedding_id, created_at, updated_at;
                """, (record.product_id, embedding_list, record.image_url))

                embedding_id, created_at, updated_at = cur.fetchone()
                conn.commit()

        record.embedding_id = embedding_id
        record.created_at = created_at
        record.updated_at = updated_at
        logger.info(f"Stored embedding {embedding_id} for product {record.product_id} ({len(embedding_list)} dims)")
        return embedding_id

    def all(self) -> List[EmbeddingRecord]:
        """Get every stored record with its product joined (None when orphaned)."""
        with self.db_manager.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(f"""
                    SELECT {_RECORD_COLUMNS}
                    FROM image_embeddings e
                    LEFT JOIN products p ON p.product_id = e.product_id
                    ORDER BY e.embedding_id
                """)
                return [record_from_row(row) for row in cur.fetchall()]

    def by_product(self, product_id: int) -> Optional[EmbeddingRecord]:
        """Get the earliest stored record for a product."""
        with self.db_manager.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(f"""
                    SELECT {_RECORD_COLUMNS}
                    FROM image_embeddings e
                    LEFT JOIN products p ON p.product_id = e.product_id
                    WHERE e.product_id = %s
                    ORDER BY e.embedding_id
                    LIMIT 1
                """, (product_id,))
                row = cur.fetchone()
                return record_from_row(row) if row else None

    def approximate_rank(self, query: Sequence[float], k: int = 10) -> List[Tuple[EmbeddingRecord, float]]:
        """
        Rank records in the database by a Euclidean approximation over the
        first APPROX_COMPONENTS components: 1 - sqrt(sum((e[i] - q[i])^2)).

        Missing components on either side count as 0. Orphaned records are
        dropped by the inner join.
        """
        query_head = [float(query[i]) if i < len(query) else 0.0 for i in range(APPROX_COMPONENTS)]
        # Postgres arrays are 1-based
        terms = " + ".join(
            f"POWER(COALESCE(e.embedding[{i + 1}], 0) - %s, 2)" for i in range(APPROX_COMPONENTS)
        )

        with self.db_manager.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(f"""
                    SELECT {_RECORD_COLUMNS},
                        1 - SQRT({terms}) AS simple_similarity
                    FROM image_embeddings e
                    JOIN products p ON p.product_id = e.product_id
                    ORDER BY simple_similarity DESC, e.embedding_id
                    LIMIT %s
                """, (*query_head, k))
                return [(record_from_row(row), float(row["simple_similarity"])) for row in cur.fetchall()]

    def sample(self, k: int = 10) -> List[EmbeddingRecord]:
        """Get up to k records with a live product, in storage order."""
        with self.db_manager.get_connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(f"""
                    SELECT {_RECORD_COLUMNS}
                    FROM image_embeddings e
                    JOIN products p ON p.product_id = e.product_id
                    LIMIT %s
                """, (k,))
                return [record_from_row(row) for row in cur.fetchall()]


# High-level service class that combines all managers
class MarketplaceDatabase:
    """
    Bundles the connection manager, product catalog and embedding store.
    """

    def __init__(self, config: DatabaseConfig = None):
        self.db_manager = DatabaseManager(config)
        self.products = ProductCatalog(self.db_manager)
        self.embeddings = EmbeddingStore(self.db_manager)

    def setup_database(self):
        """Create tables and indexes if they do not exist."""
        self.db_manager.execute_script(SCHEMA_SQL)
        logger.info("Database schema ensured")
