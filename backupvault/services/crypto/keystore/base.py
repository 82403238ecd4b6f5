from __future__ import annotations

from typing import Protocol


class KeyStore(Protocol):
    # Key management collaborator; material is opaque bytes addressed by key id.
    provider: str

    async def get_secret(self, secret_id: str) -> bytes | None:
        ...

    async def put_secret(self, secret_id: str, value: bytes) -> None:
        ...
