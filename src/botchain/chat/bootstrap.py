"""Assemble a dispatcher and its stores from :class:`BotchainConfig`.

The standard chain is ``access -> ratelimit -> <extra handlers> -> dialogue``;
ratelimit is included only when enabled and dialogue only when states are
given.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Mapping, Optional, Sequence

from ..core.clock import Clock
from ..core.config import BotchainConfig, LogConfig, SessionConfig
from ..core.exceptions import ConfigError
from ..core.logging_utils import close_rotating_logger, log_event, setup_rotating_logger
from .access import AccessHandler, AccessPolicy, DeniedHook, Principal
from .api import ApiClient
from .dialogue import DialogueHandler, DialogueMachine
from .dispatcher import Dispatcher, OutcomeCallback
from .handlers import HandlerLike, Predicate
from .ratelimit import KEY_EXTRACTORS, LimitedHook, RateLimiter, RateLimitHandler
from .session import (
    FileSessionStore,
    MemorySessionStore,
    SessionCollector,
    SessionStore,
    SqliteSessionStore,
)

# Package root logger; component loggers propagate into it.
RUNTIME_LOGGER = "botchain"

BootstrapAction = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class ChatBootstrapStep:
    """A single startup step for the dispatch runtime."""

    name: str
    action: BootstrapAction
    required: bool = True


async def run_bootstrap_steps(
    *,
    logger: logging.Logger,
    steps: Iterable[ChatBootstrapStep],
) -> None:
    """Run ordered startup steps; optional steps may fail without aborting."""

    for step in steps:
        try:
            await step.action()
        except Exception as exc:
            level = logging.ERROR if step.required else logging.WARNING
            log_event(
                logger,
                level,
                "chat.bootstrap.step_failed",
                step=step.name,
                required=step.required,
                exc=exc,
            )
            if step.required:
                raise
        else:
            log_event(
                logger,
                logging.INFO,
                "chat.bootstrap.step_ok",
                step=step.name,
                required=step.required,
            )


def build_session_store(
    config: SessionConfig, *, clock: Optional[Clock] = None
) -> SessionStore:
    if config.backend == "memory":
        return MemorySessionStore(clock=clock)
    if config.path is None:
        raise ConfigError(f"session.path is required for the {config.backend} backend")
    if config.backend == "file":
        return FileSessionStore(config.path, clock=clock)
    return SqliteSessionStore(config.path, clock=clock)


@dataclass
class ChatRuntime:
    dispatcher: Dispatcher
    session_store: SessionStore
    collector: SessionCollector
    access_policy: AccessPolicy
    rate_limiter: Optional[RateLimiter] = None
    dialogue: Optional[DialogueMachine] = None
    logger: logging.Logger = field(default_factory=lambda: logging.getLogger(RUNTIME_LOGGER))
    log_config: Optional[LogConfig] = None

    async def start(self) -> None:
        steps = []
        log_config = self.log_config
        if log_config is not None:

            async def _attach_log_file() -> None:
                setup_rotating_logger(self.logger.name, log_config)

            steps.append(
                ChatBootstrapStep(
                    name="log.rotating_file",
                    action=_attach_log_file,
                    required=False,
                )
            )
        if isinstance(self.session_store, SqliteSessionStore):
            steps.append(
                ChatBootstrapStep(
                    name="session_store.initialize",
                    action=self.session_store.initialize,
                )
            )

        async def _start_collector() -> None:
            self.collector.start()

        steps.append(
            ChatBootstrapStep(
                name="session_collector.start",
                action=_start_collector,
                required=False,
            )
        )
        await run_bootstrap_steps(logger=self.logger, steps=steps)

    async def close(self) -> None:
        await self.dispatcher.wait_idle()
        try:
            await self.collector.stop()
            await self.session_store.close()
        finally:
            if self.log_config is not None:
                close_rotating_logger(self.logger.name, self.log_config)


def build_chat_runtime(
    config: BotchainConfig,
    *,
    states: Optional[Mapping[str, HandlerLike]] = None,
    handlers: Sequence[tuple[HandlerLike, Optional[Predicate]]] = (),
    api_client: Optional[ApiClient] = None,
    predicates: Optional[Mapping[str, Callable[[Principal], bool]]] = None,
    on_denied: Optional[DeniedHook] = None,
    on_limited: Optional[LimitedHook] = None,
    on_error: Optional[OutcomeCallback] = None,
    clock: Optional[Clock] = None,
    session_clock: Optional[Clock] = None,
    logger: Optional[logging.Logger] = None,
) -> ChatRuntime:
    log = logger or logging.getLogger(RUNTIME_LOGGER)
    store = build_session_store(config.session, clock=session_clock)
    policy = AccessPolicy.from_config(
        config.access.rules,
        default=config.access.default,
        predicates=predicates,
    )
    dispatcher = Dispatcher(
        api_client=api_client,
        default_timeout_seconds=config.dispatch.timeout_seconds,
        max_concurrency=config.dispatch.max_concurrency,
        on_error=on_error,
        logger=log,
    )
    dispatcher.register(AccessHandler(policy, on_denied=on_denied, logger=log))

    limiter: Optional[RateLimiter] = None
    if config.ratelimit.enabled:
        limiter = RateLimiter(
            capacity=config.ratelimit.capacity,
            refill_amount=config.ratelimit.refill_amount,
            refill_interval=config.ratelimit.refill_interval_seconds,
            clock=clock,
            max_tracked_keys=config.ratelimit.max_tracked_keys,
            logger=log,
        )
        dispatcher.register(
            RateLimitHandler(
                limiter,
                key_extractor=KEY_EXTRACTORS[config.ratelimit.key],
                on_limited=on_limited,
                logger=log,
            )
        )

    for handler, predicate in handlers:
        dispatcher.register(handler, predicate)

    machine: Optional[DialogueMachine] = None
    if states:
        machine = DialogueMachine(
            store,
            states,
            initial_state=config.dialogue.initial_state,
            ttl=config.dialogue.ttl_seconds,
            lock_timeout_seconds=config.dialogue.lock_timeout_seconds,
            logger=log,
        )
        dispatcher.register(DialogueHandler(machine))

    dispatcher.build()
    return ChatRuntime(
        dispatcher=dispatcher,
        session_store=store,
        collector=SessionCollector(
            store,
            interval_seconds=config.session.sweep_interval_seconds,
            logger=log,
        ),
        access_policy=policy,
        rate_limiter=limiter,
        dialogue=machine,
        logger=log,
        log_config=config.log,
    )
