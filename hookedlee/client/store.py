"""Session token storage abstraction + JSON file implementation."""

import json
import os
from abc import ABC, abstractmethod

TOKEN_KEY = "authToken"


class TokenStore(ABC):
    """Where the client keeps its backend session token between requests."""

    @abstractmethod
    def get(self) -> str | None:
        ...

    @abstractmethod
    def save(self, token: str) -> None:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...


class MemoryTokenStore(TokenStore):
    def __init__(self, token: str | None = None):
        self._token = token

    def get(self) -> str | None:
        return self._token

    def save(self, token: str) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None


class JSONFileTokenStore(TokenStore):
    """File-backed store, the desktop analogue of mini-program storage."""

    def __init__(self, path: str):
        self._path = path

    def _load(self) -> dict:
        try:
            with open(self._path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            return {}
        return data if isinstance(data, dict) else {}

    def get(self) -> str | None:
        return self._load().get(TOKEN_KEY) or None

    def save(self, token: str) -> None:
        data = self._load()
        data[TOKEN_KEY] = token
        with open(self._path, "w", encoding="utf-8") as f:
            json.dump(data, f)

    def clear(self) -> None:
        data = self._load()
        if data.pop(TOKEN_KEY, None) is None:
            return
        if data:
            with open(self._path, "w", encoding="utf-8") as f:
                json.dump(data, f)
        else:
            os.remove(self._path)
