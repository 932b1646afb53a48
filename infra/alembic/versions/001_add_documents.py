"""Add documents table

Revision ID: 001_add_documents
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op

# revision identifiers, used by Alembic.
revision = '001_add_documents'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # Connections, OAuth states and provider settings all live here, addressed by path
    op.execute("""
        CREATE TABLE IF NOT EXISTS documents (
            path VARCHAR(1024) PRIMARY KEY,
            parent_path VARCHAR(1024) NOT NULL,
            collection VARCHAR(255) NOT NULL,
            doc_id VARCHAR(255) NOT NULL,
            data JSON NOT NULL DEFAULT '{}',
            created_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMP WITH TIME ZONE NOT NULL DEFAULT NOW()
        )
    """)

    op.execute("CREATE INDEX IF NOT EXISTS ix_documents_parent_path ON documents(parent_path)")
    op.execute("CREATE INDEX IF NOT EXISTS ix_documents_collection ON documents(collection)")


def downgrade():
    op.drop_index('ix_documents_collection', 'documents')
    op.drop_index('ix_documents_parent_path', 'documents')
    op.drop_table('documents')
