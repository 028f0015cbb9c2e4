"""Add pgvector shadow column, dimension check, and cosine ivfflat index on images.

Revision ID: 202610180930
Revises: 202610180900
Create Date: 2026-10-18 09:30:00.000000
"""

from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = "202610180930"
down_revision: Union[str, None] = "202610180900"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Must match settings.embedding_dimension. Changing it means a new migration
# that re-creates the column and index and re-embeds every record.
EMBEDDING_DIMENSION = 1536


def upgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name != "postgresql":
        return

    op.execute("CREATE EXTENSION IF NOT EXISTS vector")

    op.execute(
        f"""
        ALTER TABLE images
        ADD CONSTRAINT check_embedding_dimensions
        CHECK (embedding IS NULL OR array_length(embedding, 1) = {EMBEDDING_DIMENSION})
        """
    )
    op.execute(f"ALTER TABLE images ADD COLUMN IF NOT EXISTS embedding_vec vector({EMBEDDING_DIMENSION})")
    op.execute(
        f"""
        UPDATE images
        SET embedding_vec = embedding::vector({EMBEDDING_DIMENSION})
        WHERE embedding IS NOT NULL
        """
    )
    op.execute(
        f"""
        CREATE OR REPLACE FUNCTION sync_images_embedding_vector()
        RETURNS trigger AS $body$
        BEGIN
            IF NEW.embedding IS NULL THEN
                NEW.embedding_vec := NULL;
            ELSE
                NEW.embedding_vec := NEW.embedding::vector({EMBEDDING_DIMENSION});
            END IF;
            RETURN NEW;
        END;
        $body$ LANGUAGE plpgsql
        """
    )
    op.execute("DROP TRIGGER IF EXISTS trg_sync_images_embedding_vector ON images")
    op.execute(
        """
        CREATE TRIGGER trg_sync_images_embedding_vector
        BEFORE INSERT OR UPDATE OF embedding
        ON images
        FOR EACH ROW
        EXECUTE FUNCTION sync_images_embedding_vector()
        """
    )
    op.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_images_embedding_vec_ivfflat
        ON images USING ivfflat (embedding_vec vector_cosine_ops) WITH (lists = 100)
        """
    )


def downgrade() -> None:
    bind = op.get_bind()
    if bind.dialect.name != "postgresql":
        return

    op.execute("DROP INDEX IF EXISTS idx_images_embedding_vec_ivfflat")
    op.execute("DROP TRIGGER IF EXISTS trg_sync_images_embedding_vector ON images")
    op.execute("DROP FUNCTION IF EXISTS sync_images_embedding_vector()")
    op.execute("ALTER TABLE images DROP COLUMN IF EXISTS embedding_vec")
    op.execute("ALTER TABLE images DROP CONSTRAINT IF EXISTS check_embedding_dimensions")
