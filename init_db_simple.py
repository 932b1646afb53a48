#!/usr/bin/env python3
"""Simple database initialization script.

Creates the document table using SQLAlchemy models.
Run this from the repository root:
    python init_db_simple.py
"""

import sys

from apps.api.database import Base, engine
from apps.api.models import Document  # noqa: F401  (registers the table)

print("🔧 Initializing Backbone Integrations database...")
print(f"📍 Database URL: {engine.url.render_as_string(hide_password=True)}")

# Create all tables
try:
    print("\n📋 Creating tables...")
    Base.metadata.create_all(bind=engine)
    print("✅ Database tables created successfully!")

    print("\n📊 Created tables:")
    for table_name in Base.metadata.tables.keys():
        print(f"  - {table_name}")

    print("\n🎉 Database initialization complete!")
    print("\nYou can now:")
    print("  1. Start the API: uvicorn apps.api.main:app")
    print("  2. Start the refresh worker: celery -A apps.worker.celery_app worker --beat")
    print("  3. Migrate legacy connections: python -m apps.api.scripts.migrate_connections")

except Exception as e:
    print(f"\n❌ Error creating tables: {e}")
    sys.exit(1)
