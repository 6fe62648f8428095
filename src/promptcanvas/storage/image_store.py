"""SQLite database for image records and parent/variant lineage."""

import logging
import sqlite3
from datetime import datetime
from pathlib import Path

from promptcanvas.canvas.models import RelationshipType

logger = logging.getLogger(__name__)


class ImageStore:
    """Manage image records using SQLite.

    Two tables are maintained:

    - ``images``: one row per generated image (id, prompt, saved flag and
      the storage path of the persisted file once saved)
    - ``image_relationships``: directed lineage records, e.g. parent to
      variant

    Write methods report failures by returning an error message instead of
    raising, so callers on the generation path can log and carry on.
    """

    def __init__(self, db_path: Path):
        """Initialize the image database.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._initialize_db()
        logger.info(f"Initialized image database at {self.db_path}")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _initialize_db(self) -> None:
        """Create database schema if it doesn't exist."""
        with self._connect() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS images (
                    image_id TEXT PRIMARY KEY,
                    prompt TEXT,
                    saved INTEGER NOT NULL DEFAULT 0,
                    storage_path TEXT,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
                """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS image_relationships (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    source_image TEXT NOT NULL,
                    target_image TEXT NOT NULL,
                    relationship_type INTEGER NOT NULL,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
                """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_images_saved
                ON images(saved, created_at DESC)
                """)

            conn.commit()

    def store_image_data(self, image_id: str, prompt: str) -> str | None:
        """Insert or update the record of a freshly generated image.

        Args:
            image_id: Image identifier
            prompt: Prompt that produced the image

        Returns:
            Error message, or None on success
        """
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO images (image_id, prompt, saved, created_at)
                    VALUES (?, ?, 0, ?)
                    ON CONFLICT(image_id) DO UPDATE SET
                        prompt = excluded.prompt,
                        saved = 0
                    """,
                    (image_id, prompt, datetime.now().isoformat()),
                )
                conn.commit()
            logger.debug(f"Stored image record {image_id}")
            return None

        except sqlite3.Error as e:
            logger.error(f"Error storing image record {image_id}: {e}")
            return str(e)

    def store_relationship(
        self,
        source_id: str,
        target_id: str,
        relationship_type: RelationshipType = RelationshipType.IS_PARENT,
    ) -> str | None:
        """Record a directed relationship between two images.

        Args:
            source_id: Source image (e.g. the parent)
            target_id: Target image (e.g. the variant)
            relationship_type: Kind of relationship

        Returns:
            Error message, or None on success
        """
        if not source_id or not target_id:
            logger.error("Cannot log relationship: source or target id missing.")
            return "Missing source or target id for relationship."

        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO image_relationships
                        (source_image, target_image, relationship_type, created_at)
                    VALUES (?, ?, ?, ?)
                    """,
                    (source_id, target_id, int(relationship_type), datetime.now().isoformat()),
                )
                conn.commit()
            logger.info(f"Added relationship {source_id} -> {target_id}")
            return None

        except sqlite3.Error as e:
            logger.error(f"Failed to insert relationship {source_id} -> {target_id}: {e}")
            return f"Database relationship insert failed: {e}"

    def mark_saved(self, image_id: str, storage_path: str, prompt: str | None = None) -> str | None:
        """Mark an image as saved and remember where its file lives.

        Images that never went through :meth:`store_image_data` (duplicates,
        for instance) get a record created on the spot.

        Args:
            image_id: Image identifier
            storage_path: Path of the persisted file, relative to the saved dir
            prompt: Prompt to record if the image has no record yet

        Returns:
            Error message, or None on success
        """
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE images SET saved = 1, storage_path = ? WHERE image_id = ?",
                    (storage_path, image_id),
                )
                if cursor.rowcount == 0:
                    conn.execute(
                        """
                        INSERT INTO images (image_id, prompt, saved, storage_path, created_at)
                        VALUES (?, ?, 1, ?, ?)
                        """,
                        (image_id, prompt, storage_path, datetime.now().isoformat()),
                    )
                conn.commit()
            logger.info(f"Marked image {image_id} as saved ({storage_path})")
            return None

        except sqlite3.Error as e:
            logger.error(f"Database update error for image {image_id}: {e}")
            return str(e)

    def get_image(self, image_id: str) -> dict | None:
        """Return the record for *image_id*, or None if unknown."""
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT image_id, prompt, saved, storage_path FROM images WHERE image_id = ?",
                    (image_id,),
                ).fetchone()
            return dict(row) if row else None

        except sqlite3.Error as e:
            logger.error(f"Error reading image {image_id}: {e}")
            return None

    def list_saved(self) -> list[dict]:
        """Return every saved image record, newest first.

        Raises:
            sqlite3.Error: If the query fails
        """
        with self._connect() as conn:
            rows = conn.execute("""
                SELECT image_id, prompt, storage_path
                FROM images
                WHERE saved = 1
                ORDER BY created_at DESC, image_id
                """).fetchall()
        return [dict(row) for row in rows]

    def list_relationships(self, source_id: str) -> list[dict]:
        """Return relationships whose source is *source_id*, oldest first."""
        try:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT source_image, target_image, relationship_type
                    FROM image_relationships
                    WHERE source_image = ?
                    ORDER BY id
                    """,
                    (source_id,),
                ).fetchall()
            return [dict(row) for row in rows]

        except sqlite3.Error as e:
            logger.error(f"Error reading relationships for {source_id}: {e}")
            return []
