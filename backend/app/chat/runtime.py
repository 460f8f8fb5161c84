"""Process-wide wiring of the realtime chat components.

All socket and REST handlers share one ``ChatRuntime``: the identity provider,
room store, connection registry, authorization guard, broadcast engine and
typing relay. The runtime is built from ``AppConfig`` on first use, or
installed explicitly with ``set_runtime()`` (tests, custom deployments).
"""
import logging
from dataclasses import dataclass
from typing import Optional

from app.auth.identity import IdentityProvider, JWTIdentityProvider
from app.config import AppConfig, get_config

from .engine import MessageBroadcastEngine
from .guard import RoomAuthorizationGuard
from .presence import TypingRelay
from .registry import ConnectionRegistry
from .store import InMemoryRoomStore, RoomStore

logger = logging.getLogger(__name__)


@dataclass
class ChatRuntime:
    config: AppConfig
    identity_provider: IdentityProvider
    store: RoomStore
    registry: ConnectionRegistry
    guard: RoomAuthorizationGuard
    engine: MessageBroadcastEngine
    typing: TypingRelay

    def close(self) -> None:
        self.store.close()


def _build_store(config: AppConfig) -> RoomStore:
    if config.storage.backend == "duckdb":
        from .duckdb_store import DuckDBRoomStore
        return DuckDBRoomStore(db_path=config.storage.duckdb_path)
    return InMemoryRoomStore()


def build_runtime(
    config: AppConfig,
    *,
    identity_provider: Optional[IdentityProvider] = None,
    store: Optional[RoomStore] = None,
) -> ChatRuntime:
    """Assemble the chat components from configuration.

    Args:
        config: Application configuration.
        identity_provider: Override the JWT provider built from the secrets.
        store: Override the store selected by ``storage.backend``.
    """
    if identity_provider is None:
        identity_provider = JWTIdentityProvider(
            secret_key=config.secrets.jwt.secret_key,
            algorithm=config.auth.algorithm,
        )
    if store is None:
        store = _build_store(config)

    registry = ConnectionRegistry(
        identity_provider,
        allow_anonymous=config.auth.allow_anonymous,
        guest_display_name=config.auth.guest_display_name,
    )
    guard = RoomAuthorizationGuard(banned_users_can_read=config.chat.banned_users_can_read)
    engine = MessageBroadcastEngine(
        registry,
        store,
        guard,
        max_message_length=config.chat.max_message_length,
        redaction_text=config.chat.redaction_text,
    )
    logger.info(
        f"[Runtime] Chat runtime ready (store={type(store).__name__}, "
        f"allow_anonymous={config.auth.allow_anonymous})"
    )
    return ChatRuntime(
        config=config,
        identity_provider=identity_provider,
        store=store,
        registry=registry,
        guard=guard,
        engine=engine,
        typing=TypingRelay(registry),
    )


_runtime: Optional[ChatRuntime] = None


def get_runtime() -> ChatRuntime:
    """Return the global ChatRuntime, building it from config on first use."""
    global _runtime
    if _runtime is None:
        _runtime = build_runtime(get_config())
    return _runtime


def set_runtime(runtime: Optional[ChatRuntime]) -> None:
    """Set (or clear) the global ChatRuntime instance."""
    global _runtime
    _runtime = runtime


def shutdown_runtime() -> None:
    global _runtime
    if _runtime is not None:
        _runtime.close()
        _runtime = None
