from __future__ import annotations

from sqlalchemy.engine import Engine

from bankrec.db.base import Base
from bankrec.db.session import ENGINE
from bankrec.models import models  # noqa: F401  (registers tables on Base.metadata)


def init_db(engine: Engine | None = None) -> None:
    """Creates the reconciliation tables and the read-only candidate projections."""
    Base.metadata.create_all(bind=engine or ENGINE)
