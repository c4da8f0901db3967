#!/usr/bin/env python3
"""
MongoDB Atlas Setup Script

This script prepares a MongoDB Atlas database for BotForge.
It will:
1. Test your MongoDB connection
2. Create the required collections
3. Create the regular lookup indexes
4. Create (or print) the vector search indexes for knowledge and memory

Usage:
    python scripts/setup_mongodb.py
    python scripts/setup_mongodb.py --print-only
"""

import argparse
import json
import logging
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dotenv import load_dotenv
load_dotenv()

from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import ConfigurationError, OperationFailure, ServerSelectionTimeoutError
from pymongo.operations import SearchIndexModel

from config.settings import get_settings

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Filter fields available to $vectorSearch pre-filters, per collection
VECTOR_FILTER_FIELDS = {
    "knowledge": ["user_id", "chatbot_id"],
    "memory": ["user_id", "chatbot_id", "conversation_id"],
}


def print_banner():
    """Print setup banner."""
    print("\n" + "=" * 60)
    print("  MongoDB Atlas Setup")
    print("  BotForge")
    print("=" * 60 + "\n")


def test_connection(uri: str) -> bool:
    """Test MongoDB connection."""
    print("\nTesting MongoDB connection...")

    try:
        client = MongoClient(uri, serverSelectionTimeoutMS=10000)
        client.admin.command('ping')
        server_info = client.server_info()
        print("Connected to MongoDB")
        print(f"   Server version: {server_info.get('version', 'unknown')}")
        return True

    except ServerSelectionTimeoutError:
        print("Connection timeout. Check your URI and network.")
        return False
    except ConfigurationError as e:
        print(f"Configuration error: {e}")
        return False


def setup_collection(db, collection_name: str):
    """Create the collection if missing."""
    if collection_name in db.list_collection_names():
        count = db[collection_name].count_documents({})
        print(f"  {collection_name}: exists with {count} documents")
    else:
        db.create_collection(collection_name)
        print(f"  {collection_name}: created")
    return db[collection_name]


def create_lookup_indexes(db, config):
    """Create the regular indexes used by the request handlers."""
    db[config.chatbots_collection].create_index("slug", unique=True)
    db[config.chatbots_collection].create_index([("owner_id", ASCENDING), ("created_at", DESCENDING)])

    db[config.conversations_collection].create_index([("chatbot_id", ASCENDING), ("updated_at", DESCENDING)])

    db[config.messages_collection].create_index(
        [("conversation_id", ASCENDING), ("created_at", ASCENDING), ("seq", ASCENDING)]
    )

    db[config.knowledge_collection].create_index([("user_id", ASCENDING), ("chatbot_id", ASCENDING)])

    db[config.memory_collection].create_index(
        [("user_id", ASCENDING), ("chatbot_id", ASCENDING), ("conversation_id", ASCENDING)]
    )
    print("  Lookup indexes ensured")


def get_vector_index_definition(dimension: int, filter_fields):
    """Get the Atlas vector search index definition."""
    fields = [
        {
            "type": "vector",
            "path": "embedding",
            "numDimensions": dimension,
            "similarity": "cosine"
        }
    ]
    fields.extend({"type": "filter", "path": path} for path in filter_fields)
    return {"fields": fields}


def ensure_vector_index(collection, index_name: str, definition: dict) -> bool:
    """Create a vector search index unless one with that name exists."""
    try:
        existing = {idx.get("name"): idx for idx in collection.list_search_indexes()}
        if index_name in existing:
            status = existing[index_name].get("status", "unknown")
            print(f"  {index_name}: exists (status: {status})")
            return True

        model = SearchIndexModel(definition=definition, name=index_name, type="vectorSearch")
        collection.create_search_index(model=model)
        print(f"  {index_name}: created (becomes queryable once Atlas reports READY)")
        return True

    except OperationFailure as e:
        logger.debug(f"Could not manage search indexes: {e}")
        print(f"  {index_name}: could not be created automatically ({e.code})")
        return False


def print_index_instructions(collection_name: str, index_name: str, definition: dict):
    """Print instructions for creating a vector index in the Atlas UI."""
    print(f"""
Create the index manually in Atlas:
  Atlas Search -> Create Search Index -> JSON Editor
  Collection: {collection_name}
  Index name: {index_name}
""")
    print(json.dumps(definition, indent=2))


def main():
    """Main setup flow."""
    parser = argparse.ArgumentParser(description="Prepare MongoDB Atlas for BotForge")
    parser.add_argument("--print-only", action="store_true", help="Only print index definitions")
    args = parser.parse_args()

    print_banner()

    settings = get_settings()
    config = settings.database
    dimension = settings.embedding.dimension

    vector_indexes = [
        (config.knowledge_collection, config.knowledge_vector_index, VECTOR_FILTER_FIELDS["knowledge"]),
        (config.memory_collection, config.memory_vector_index, VECTOR_FILTER_FIELDS["memory"]),
    ]

    if args.print_only:
        for collection_name, index_name, filter_fields in vector_indexes:
            definition = get_vector_index_definition(dimension, filter_fields)
            print_index_instructions(collection_name, index_name, definition)
        return

    uri = config.mongodb_service_uri or config.mongodb_uri
    if not uri:
        print("MONGODB_URI is required")
        sys.exit(1)

    if not test_connection(uri):
        print("\nCould not connect to MongoDB. Please check your URI.")
        sys.exit(1)

    db = MongoClient(uri)[config.mongodb_database]

    print(f"\nCollections in {config.mongodb_database}:")
    for name in (
        config.chatbots_collection,
        config.conversations_collection,
        config.messages_collection,
        config.knowledge_collection,
        config.memory_collection,
    ):
        setup_collection(db, name)

    print("\nIndexes:")
    create_lookup_indexes(db, config)

    print(f"\nVector search indexes ({dimension} dimensions):")
    for collection_name, index_name, filter_fields in vector_indexes:
        definition = get_vector_index_definition(dimension, filter_fields)
        if not ensure_vector_index(db[collection_name], index_name, definition):
            print_index_instructions(collection_name, index_name, definition)

    print("\n" + "=" * 60)
    print("  MongoDB Atlas Setup Complete!")
    print("=" * 60)
    print("""
Without the vector indexes, retrieval falls back to in-process cosine
ranking over the bot's stored chunks.

Next Steps:
  1. Ensure your .env has the correct MONGODB_URI
  2. Run the API: python run_server.py
""")


if __name__ == "__main__":
    main()
