"""Call agent driving a negotiator from a signaling server connection."""
from __future__ import annotations

import asyncio
import logging
from types import TracebackType
from typing import Any
from typing import Callable
from typing import Generator

import websockets.exceptions

from callrelay.client import SignalingClient
from callrelay.exceptions import EnvelopeDecodeError
from callrelay.exceptions import SignalingNotConnectedError
from callrelay.negotiation import NegotiationPrimitive
from callrelay.negotiation import NegotiationSession
from callrelay.negotiation import Negotiator
from callrelay.negotiation import Phase
from callrelay.primitive import AiortcPrimitive
from callrelay.utils.tasks import SafeTaskExitError
from callrelay.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)

_CLOSED_ERRORS = (
    websockets.exceptions.ConnectionClosed,
    SignalingNotConnectedError,
)


class CallAgent:
    """Call agent of a single local participant.

    Logs in to the signaling server, listens for envelopes addressed to the
    participant, and feeds them one at a time to a
    [`Negotiator`][callrelay.negotiation.Negotiator].

    Example:
        ```python
        from callrelay.agent import CallAgent
        from callrelay.client import SignalingClient

        async with CallAgent(
            SignalingClient(address, 'alice'),
        ) as alice, CallAgent(
            SignalingClient(address, 'bob'),
        ) as bob:
            await alice.call('bob')
            await alice.wait_for_phase(Phase.connected, timeout=5)
        ```

    Note:
        The agent can also be initialized with `await`.

    Args:
        client: Client interface to the signaling server.
        primitive_factory: Callable that returns a new negotiation primitive
            for each session.
        answer_timeout: Optional seconds to wait on the answer to an offer
            before failing the session.
    """

    def __init__(
        self,
        client: SignalingClient,
        primitive_factory: Callable[
            [],
            NegotiationPrimitive,
        ] = AiortcPrimitive,
        *,
        answer_timeout: float | None = None,
    ) -> None:
        self._client = client
        self._negotiator = Negotiator(
            client.send,
            primitive_factory,
            answer_timeout=answer_timeout,
            local_name=client.name,
        )
        self._negotiator.add_listener(self._on_phase_change)

        self._waiters: list[
            tuple[frozenset[Phase], asyncio.Future[Phase]]
        ] = []
        self._listen_task: asyncio.Task[None] | None = None

    @property
    def _log_prefix(self) -> str:
        return f'{self.__class__.__name__}[{self.name}]'

    @property
    def name(self) -> str:
        """Name of the local participant."""
        return self._client.name

    @property
    def negotiator(self) -> Negotiator:
        """Negotiation state machine."""
        return self._negotiator

    @property
    def phase(self) -> Phase:
        """Phase of the current session."""
        return self._negotiator.phase

    @property
    def session(self) -> NegotiationSession | None:
        """Current negotiation session."""
        return self._negotiator.session

    async def async_init(self) -> None:
        """Log in and begin listening for envelopes."""
        await self._client.connect()
        if self._listen_task is None:
            self._listen_task = spawn_guarded_background_task(
                self._handle_server_messages,
                name=f'call-agent-listener-{self.name}',
            )

    async def __aenter__(self) -> CallAgent:
        await self.async_init()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_value: BaseException | None,
        exc_traceback: TracebackType | None,
    ) -> None:
        await self.close()

    def __await__(self) -> Generator[Any, None, CallAgent]:
        return self.__aenter__().__await__()

    def _on_phase_change(
        self,
        phase: Phase,
        session: NegotiationSession | None,
    ) -> None:
        for phases, future in self._waiters:
            if phase in phases and not future.done():
                future.set_result(phase)

    async def _handle_server_messages(self) -> None:
        logger.info(
            f'{self._log_prefix}: listening for envelopes from signaling '
            'server',
        )
        while True:
            try:
                envelope = await self._client.recv()
            except EnvelopeDecodeError as e:
                logger.error(
                    f'{self._log_prefix}: error decoding envelope from '
                    f'signaling server: {e} ...skipping envelope',
                )
                continue
            except _CLOSED_ERRORS:
                break

            try:
                await self._negotiator.handle(envelope)
            except _CLOSED_ERRORS:
                break

        logger.info(f'{self._log_prefix}: signaling server connection closed')

    async def call(self, remote_name: str) -> NegotiationSession:
        """Start a call with a remote participant.

        Raises:
            CallInProgressError: If a session is already in progress.
        """
        return await self._negotiator.call(remote_name)

    async def hang_up(self) -> None:
        """End the current call."""
        await self._negotiator.hang_up()

    async def wait_for_phase(
        self,
        *phases: Phase,
        timeout: float | None = None,
    ) -> Phase:
        """Wait for the session to enter one of the phases.

        Args:
            phases: Phases to wait for.
            timeout: Optional seconds to wait.

        Returns:
            The phase that was entered.

        Raises:
            asyncio.TimeoutError: If none of the phases were entered within
                the timeout.
        """
        if self.phase in phases:
            return self.phase

        future: asyncio.Future[Phase] = (
            asyncio.get_running_loop().create_future()
        )
        waiter = (frozenset(phases), future)
        self._waiters.append(waiter)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            self._waiters.remove(waiter)

    async def close(self) -> None:
        """Hang up and close the connection to the signaling server."""
        if self._listen_task is not None:
            self._listen_task.cancel()
            try:
                await self._listen_task
            except (asyncio.CancelledError, SafeTaskExitError):
                pass
            self._listen_task = None

        await self._negotiator.close()
        await self._client.close()
        logger.info(f'{self._log_prefix}: call agent closed')
