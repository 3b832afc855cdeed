"""
SQLite storage for uploaded images and finished clusters.

The clustering engine never writes anywhere; it returns
:class:`~collection_cluster.records.ClusterRecord` objects for the caller to
persist.  :class:`ClusterStore` is a small reference store for that job,
keyed by owner, with the same operations the hosted backend offers:
``put_image``, ``put_cluster_record``, ``list_clusters``, ``get_cluster`` and
``delete_cluster``.

The tables are created automatically if they do not exist when connecting.
All interactions are implemented using SQLAlchemy Core.
"""

from __future__ import annotations

import datetime as _dt
import logging
import uuid
from pathlib import Path
from typing import List, Optional, Union

from sqlalchemy import (
    Table, Column, Integer, String, DateTime, JSON, LargeBinary, MetaData,
    create_engine, select, insert, delete, func,
)
from sqlalchemy.engine import Engine

from .records import ClusterRecord

logger = logging.getLogger(__name__)


def _make_metadata() -> MetaData:
    """Define and return SQLAlchemy metadata with our table definitions."""
    metadata = MetaData()
    Table(
        "clusters", metadata,
        Column("id", String, primary_key=True),
        Column("owner_id", String, nullable=False, index=True),
        Column("title", String, nullable=False),
        Column("description", String, nullable=True),
        Column("images", JSON, nullable=False),  # list of {id, url, alt}
        Column("palette", JSON, nullable=False),
        Column("tags", JSON, nullable=False),
        Column("size", Integer, nullable=False),
        Column("created_at", DateTime, nullable=False),
    )
    Table(
        "images", metadata,
        Column("path", String, primary_key=True),
        Column("owner_id", String, nullable=False, index=True),
        Column("cluster_id", String, nullable=False, index=True),
        Column("filename", String, nullable=False),
        Column("data", LargeBinary, nullable=False),
        Column("created_at", DateTime, nullable=False),
    )
    return metadata


def _now() -> _dt.datetime:
    return _dt.datetime.now(_dt.timezone.utc).replace(tzinfo=None)


_METADATA = _make_metadata()
_CLUSTERS = _METADATA.tables["clusters"]
_IMAGES = _METADATA.tables["images"]


def init_db(db_path: Union[Path, str]) -> Engine:
    """Initialize the database and create tables if they do not exist.

    Parameters
    ----------
    db_path: Path or str
        Location of the SQLite database file, or ``":memory:"``.

    Returns
    -------
    sqlalchemy.Engine
        Connected engine instance.
    """
    engine = create_engine(f"sqlite:///{db_path}")
    _METADATA.create_all(engine)
    return engine


class ClusterStore:
    """Owner-scoped key/value store for images and cluster records."""

    def __init__(self, db_path: Union[Path, str, None] = None, engine: Optional[Engine] = None) -> None:
        if engine is None:
            if db_path is None:
                raise ValueError("either db_path or engine is required")
            engine = init_db(db_path)
        else:
            _METADATA.create_all(engine)
        self.engine = engine

    def put_image(self, owner_id: str, cluster_id: str, data: bytes, filename: str) -> str:
        """Store image bytes and return their storage path ``owner/cluster/<uuid>-filename``.

        Every call gets a fresh path, so uploads sharing a file name never
        overwrite each other.
        """
        path = f"{owner_id}/{cluster_id}/{uuid.uuid4().hex}-{filename}"
        with self.engine.begin() as conn:
            conn.execute(insert(_IMAGES).values(
                path=path, owner_id=owner_id, cluster_id=cluster_id, filename=filename,
                data=data, created_at=_now(),
            ))
        return path

    def get_image(self, path: str) -> Optional[bytes]:
        with self.engine.connect() as conn:
            row = conn.execute(select(_IMAGES.c.data).where(_IMAGES.c.path == path)).first()
        return row[0] if row else None

    def put_cluster_record(self, owner_id: str, record: ClusterRecord) -> str:
        """Insert or replace ``record`` for ``owner_id`` and return its stored id."""
        row = record.to_dict()
        with self.engine.begin() as conn:
            conn.execute(delete(_CLUSTERS).where(
                (_CLUSTERS.c.id == record.id) & (_CLUSTERS.c.owner_id == owner_id)))
            conn.execute(insert(_CLUSTERS).values(
                id=record.id, owner_id=owner_id, title=row["title"], description=row["description"],
                images=row["images"], palette=row["palette"], tags=row["tags"],
                size=len(record.images), created_at=_now(),
            ))
        logger.debug("Stored cluster %s for %s", record.id, owner_id)
        return record.id

    def get_cluster(self, owner_id: str, cluster_id: str) -> Optional[ClusterRecord]:
        query = select(_CLUSTERS).where(
            (_CLUSTERS.c.id == cluster_id) & (_CLUSTERS.c.owner_id == owner_id))
        with self.engine.connect() as conn:
            row = conn.execute(query).mappings().first()
        return ClusterRecord.from_dict(dict(row)) if row else None

    def list_clusters(self, owner_id: str) -> List[ClusterRecord]:
        """Return the owner's clusters, largest first."""
        query = (select(_CLUSTERS).where(_CLUSTERS.c.owner_id == owner_id)
                 .order_by(_CLUSTERS.c.size.desc(), _CLUSTERS.c.created_at))
        with self.engine.connect() as conn:
            rows = conn.execute(query).mappings().all()
        return [ClusterRecord.from_dict(dict(row)) for row in rows]

    def count_images(self, owner_id: str) -> int:
        query = select(func.count()).select_from(_IMAGES).where(_IMAGES.c.owner_id == owner_id)
        with self.engine.connect() as conn:
            return int(conn.execute(query).scalar_one())

    def delete_cluster(self, owner_id: str, cluster_id: str) -> bool:
        """Delete a cluster and its stored images.  Returns whether it existed."""
        with self.engine.begin() as conn:
            conn.execute(delete(_IMAGES).where(
                (_IMAGES.c.cluster_id == cluster_id) & (_IMAGES.c.owner_id == owner_id)))
            result = conn.execute(delete(_CLUSTERS).where(
                (_CLUSTERS.c.id == cluster_id) & (_CLUSTERS.c.owner_id == owner_id)))
        return result.rowcount > 0
