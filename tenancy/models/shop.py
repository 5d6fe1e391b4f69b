"""Shop model — the tenant, as the master business schema defines it.

Read-only from this package's point of view: the provision job enumerates
shops from here, nothing ever writes to it.
"""

from sqlmodel import Field, SQLModel


class Shop(SQLModel, table=True):
    __tablename__ = "shops"

    id: int = Field(primary_key=True)
    name: str = Field(nullable=False)
