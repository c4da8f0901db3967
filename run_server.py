"""
Run BotForge API - Direct launch script
"""
import sys
import logging

from dotenv import load_dotenv
load_dotenv()

import uvicorn

from config.settings import get_settings

settings = get_settings()

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[
        logging.StreamHandler(sys.stdout),
    ]
)

from botforge.api import create_app

print("=" * 60)
print("  BotForge API - Starting...")
print("=" * 60)
print(f"""
Database:   {settings.database.provider}
Embeddings: {settings.embedding.provider} ({settings.embedding.dimension} dims)
Auth:       {"DEV_NO_AUTH (dummy owner)" if settings.auth.dev_no_auth else "bearer token"}

Listening on http://{settings.server.host}:{settings.server.port}
Press Ctrl+C to stop the server.
""")

app = create_app()

if __name__ == "__main__":
    uvicorn.run(app, host=settings.server.host, port=settings.server.port, log_level=settings.log_level.lower())
