from __future__ import annotations

from contextvars import ContextVar, Token

correlation_id_var: ContextVar[str | None] = ContextVar("correlation_id", default=None)
actor_id_var: ContextVar[int | None] = ContextVar("actor_id", default=None)
client_info_var: ContextVar[tuple[str | None, str | None]] = ContextVar("client_info", default=(None, None))


def set_correlation_id(value: str | None) -> Token[str | None]:
    return correlation_id_var.set(value)


def reset_correlation_id(token: Token[str | None]) -> None:
    correlation_id_var.reset(token)


def get_correlation_id() -> str | None:
    return correlation_id_var.get()


def set_actor_id(value: int | None) -> Token[int | None]:
    return actor_id_var.set(value)


def get_actor_id() -> int | None:
    return actor_id_var.get()


def set_client_info(ip_address: str | None, user_agent: str | None) -> Token[tuple[str | None, str | None]]:
    return client_info_var.set((ip_address, user_agent))


def reset_client_info(token: Token[tuple[str | None, str | None]]) -> None:
    client_info_var.reset(token)


def get_client_info() -> tuple[str | None, str | None]:
    """Remote address and user agent of the request being served, if any."""
    return client_info_var.get()
