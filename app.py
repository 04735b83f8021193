"""
Simple startup script for the Marketplace Visual Search API.
Run this to start the FastAPI server.
"""

import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

def main():
    """Start the FastAPI application."""
    try:
        import uvicorn
        from marketplace.config import Config

        logger.info("Starting Marketplace Visual Search API server...")
        logger.info(f"API documentation at: http://localhost:{Config.API_PORT}/docs")
        logger.info("Press Ctrl+C to stop the server")

        uvicorn.run(
            "marketplace.main:app",
            host=Config.API_HOST,
            port=Config.API_PORT,
            reload=True,
            log_level="info"
        )

    except KeyboardInterrupt:
        logger.info("Server stopped by user")
    except ImportError as e:
        logger.error(f"Missing dependencies: {e}")
        logger.error("Please install the package: pip install -e .")
    except Exception as e:
        logger.error(f"Error starting server: {e}")

if __name__ == "__main__":
    main()
