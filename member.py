from __future__ import annotations

from datetime import datetime

from database import format_timestamp, parse_timestamp


class Member:
    """A registered library member."""

    def __init__(self, id: str, name: str, email: str, phone: str | None = None,
                 address: str | None = None, is_active: bool = True,
                 join_date: datetime | None = None) -> None:
        self.id = id
        self.name = name.strip()
        self.email = email.strip()
        self.phone = phone
        self.address = address
        self.is_active = bool(is_active)
        self.join_date = join_date

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.name} <{self.email}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "isActive": self.is_active,
            "joinDate": format_timestamp(self.join_date) if self.join_date else None,
        }

    @staticmethod
    def from_row(data: dict) -> "Member":
        join_date = data.get("join_date")
        return Member(
            id=data["id"],
            name=data["name"],
            email=data["email"],
            phone=data.get("phone"),
            address=data.get("address"),
            is_active=data.get("is_active", 1),
            join_date=parse_timestamp(join_date) if join_date else None,
        )
