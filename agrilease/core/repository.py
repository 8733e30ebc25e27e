from typing import Any, Callable, Generic, List, Optional, TypeVar

from sqlalchemy.orm import Session

DomainModelType = TypeVar("DomainModelType")


class BaseRepository(Generic[DomainModelType]):
    """
    Base for typed table repositories.

    Repositories never own a transaction: the caller passes the Session from
    get_db_session() and decides where the transaction boundary sits, so
    several repositories can write inside one atomic unit.
    """

    def __init__(self, session: Session, row_to_domain: Callable[[Any], DomainModelType]):
        self.session = session
        self._row_to_domain = row_to_domain

    def _one(self, stmt) -> Optional[DomainModelType]:
        row = self.session.execute(stmt).mappings().first()
        return self._row_to_domain(row) if row else None

    def _all(self, stmt) -> List[DomainModelType]:
        rows = self.session.execute(stmt).mappings().all()
        return [self._row_to_domain(row) for row in rows]

    def _compare_and_swap(self, stmt) -> bool:
        """Run a guarded UPDATE; True only if exactly one row matched its WHERE."""
        result = self.session.execute(stmt)
        return result.rowcount == 1
