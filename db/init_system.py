"""
Initialization script for the database: schema setup, product seeding from a
JSON file, and embedding backfill for products that do not have one yet.
"""

import sys
import json
import asyncio
from pathlib import Path
import argparse
import logging
import time
from typing import Optional

import httpx

# Add project root to path for proper package imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from marketplace.config import Config
from marketplace.database import MarketplaceDatabase, DatabaseConfig, EmbeddingRecord, StorageError
from marketplace.embedder import RemoteEmbeddingProvider, EmbeddingProviderError, fallback_embed
from marketplace.preprocessing import preprocess_image

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

def setup_database(database: MarketplaceDatabase) -> bool:
    """Create the products and image_embeddings tables."""
    logger.info("Setting up database schema...")
    try:
        database.setup_database()
        logger.info("Database setup completed successfully")
        return True
    except Exception as e:
        logger.error(f"Database setup failed: {e}")
        return False

def seed_products(database: MarketplaceDatabase, seed_file: str) -> bool:
    """
    Insert catalog products from a JSON file holding a list of
    {"name": ..., "price": ..., "image_url": ...} objects.
    """
    try:
        with open(seed_file) as f:
            products = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Could not read seed file {seed_file}: {e}")
        return False

    inserted = 0
    failed = 0
    for product in products:
        try:
            product_id = database.products.insert_product(
                product["name"], product.get("price", 0), product.get("image_url")
            )
            inserted += 1
            logger.info(f"Inserted product {product['name']} ({product_id})")
        except (KeyError, StorageError) as e:
            failed += 1
            logger.error(f"Error inserting product {product}: {e}")

    logger.info(f"Seeding finished: {inserted} inserted, {failed} failed")
    return failed == 0

async def download_image(client: httpx.AsyncClient, url: str) -> bytes:
    response = await client.get(url)
    response.raise_for_status()
    return response.content

async def backfill_embeddings(database: MarketplaceDatabase,
                              provider: RemoteEmbeddingProvider,
                              allow_fallback: bool = False,
                              limit: Optional[int] = None,
                              client: Optional[httpx.AsyncClient] = None) -> bool:
    """
    Generate embeddings for products that have an image URL but no stored embedding.

    Failures are logged per product and do not stop the run.
    """
    products = database.products.get_products_without_embeddings()
    if limit:
        products = products[:limit]

    if not products:
        logger.info("All products with images already have embeddings")
        return True

    logger.info(f"Found {len(products)} products with images and no embedding")

    own_client = client is None
    client = client or httpx.AsyncClient(timeout=Config.EMBEDDING_TIMEOUT, follow_redirects=True)

    successful = 0
    failed = 0
    start_time = time.time()

    try:
        for product in products:
            product_id = product["product_id"]
            try:
                logger.info(f"Processing product: {product['name']} ({product_id})")

                image_bytes = await download_image(client, product["image_url"])
                processed = await asyncio.to_thread(preprocess_image, image_bytes)

                try:
                    embedding = await provider.embed(processed)
                except EmbeddingProviderError as e:
                    if not allow_fallback:
                        raise
                    logger.warning(f"Primary embedding failed for product {product_id}, using fallback: {e}")
                    embedding = fallback_embed(processed, Config.EMBEDDING_DIM).vector

                record = EmbeddingRecord(
                    product_id=product_id,
                    embedding=embedding,
                    image_url=product["image_url"],
                )
                await asyncio.to_thread(database.embeddings.insert, record)
                successful += 1
                logger.info(f"Successfully added embedding for product {product_id}")

            except Exception as e:
                failed += 1
                logger.error(f"Error processing product {product_id}: {e}")
    finally:
        if own_client:
            await client.aclose()

    elapsed = time.time() - start_time
    logger.info(f"Backfill finished: {successful} added, {failed} failed in {elapsed:.2f}s")
    return failed == 0

def run_system_check(database: MarketplaceDatabase) -> bool:
    """Report stored embeddings and how many of them are orphaned."""
    try:
        records = database.embeddings.all()
        orphaned = sum(1 for record in records if not record.has_product)
        lengths = sorted({len(record.embedding) for record in records})

        logger.info(f"Stored embeddings: {len(records)}")
        logger.info(f"Orphaned embeddings: {orphaned}")
        logger.info(f"Embedding lengths: {lengths}")
        logger.info(f"Embedding API token configured: {bool(Config.HUGGINGFACE_TOKEN)}")
        return True
    except Exception as e:
        logger.error(f"System health check failed: {e}")
        return False

def main():
    parser = argparse.ArgumentParser(description="Initialize Marketplace Visual Search")
    parser.add_argument("--setup-db", action="store_true", help="Setup database schema")
    parser.add_argument("--seed", metavar="FILE", default=None, help="Insert products from a JSON file")
    parser.add_argument("--backfill", action="store_true", help="Generate embeddings for products without one")
    parser.add_argument("--allow-fallback", action="store_true",
                       help="Use the local statistics embedding when the remote model fails")
    parser.add_argument("--limit", type=int, default=None, help="Maximum number of products to backfill")
    parser.add_argument("--all", action="store_true", help="Run all initialization steps")
    parser.add_argument("--check", action="store_true", help="Run system health check")

    args = parser.parse_args()

    # If no specific actions, show help
    if not any([args.setup_db, args.seed, args.backfill, args.all, args.check]):
        parser.print_help()
        return

    logger.info("=== Marketplace Visual Search Initialization ===")

    db_config = DatabaseConfig()
    database = MarketplaceDatabase(db_config)
    logger.info(f"Database: {db_config.dbname}@{db_config.host}:{db_config.port}")

    start_time = time.time()
    success_count = 0
    total_steps = 0

    if args.all or args.setup_db:
        total_steps += 1
        logger.info("--- Step: Setup Database ---")
        if setup_database(database):
            success_count += 1

    if args.seed:
        total_steps += 1
        logger.info("--- Step: Seed Products ---")
        if seed_products(database, args.seed):
            success_count += 1

    if args.all or args.backfill:
        total_steps += 1
        logger.info("--- Step: Backfill Embeddings ---")
        provider = RemoteEmbeddingProvider(
            token=Config.HUGGINGFACE_TOKEN,
            model_name=Config.EMBEDDING_MODEL,
            api_url=Config.EMBEDDING_API_URL,
            timeout=Config.EMBEDDING_TIMEOUT,
        )

        async def _run():
            try:
                return await backfill_embeddings(database, provider, args.allow_fallback, args.limit)
            finally:
                await provider.aclose()

        if asyncio.run(_run()):
            success_count += 1

    if args.check:
        logger.info("--- System Health Check ---")
        run_system_check(database)

    # Summary
    elapsed_time = time.time() - start_time
    logger.info("=== Initialization Complete ===")
    logger.info(f"Completed {success_count}/{total_steps} steps successfully")
    logger.info(f"Total time: {elapsed_time:.2f} seconds")

    if success_count == total_steps:
        logger.info("Start the API server with: python app.py")
    else:
        logger.warning("Some initialization steps failed. Check the logs above.")

if __name__ == "__main__":
    main()
