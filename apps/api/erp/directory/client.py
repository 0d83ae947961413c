from __future__ import annotations

import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from erp.directory.models import DirectoryClient, DirectoryUser


@dataclass(frozen=True)
class ClientRecord:
    id: uuid.UUID
    name: str
    contact_person: str | None = None
    email: str | None = None
    phone: str | None = None


@dataclass(frozen=True)
class UserRecord:
    id: uuid.UUID
    display_name: str
    email: str | None = None
    avatar_url: str | None = None


class ClientDirectory(Protocol):
    def get_clients(self, client_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, ClientRecord]: ...


class UserDirectory(Protocol):
    def get_users(self, user_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, UserRecord]: ...


def _unique(ids: Iterable[uuid.UUID | None]) -> list[uuid.UUID]:
    return sorted({item for item in ids if item is not None}, key=str)


class SqlClientDirectory:
    def __init__(self, session: Session):
        self.session = session

    def get_clients(self, client_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, ClientRecord]:
        ids = _unique(client_ids)
        if not ids:
            return {}
        rows = self.session.scalars(select(DirectoryClient).where(DirectoryClient.id.in_(ids)))
        return {
            row.id: ClientRecord(
                id=row.id,
                name=row.name,
                contact_person=row.contact_person,
                email=row.email,
                phone=row.phone,
            )
            for row in rows
        }


class SqlUserDirectory:
    def __init__(self, session: Session):
        self.session = session

    def get_users(self, user_ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, UserRecord]:
        ids = _unique(user_ids)
        if not ids:
            return {}
        rows = self.session.scalars(select(DirectoryUser).where(DirectoryUser.id.in_(ids)))
        return {
            row.id: UserRecord(id=row.id, display_name=row.display_name, email=row.email, avatar_url=row.avatar_url)
            for row in rows
        }
