"""Negotiation state machine for a single local participant.

A [`Negotiator`][callrelay.negotiation.Negotiator] drives one peer
relationship at a time through the offer/answer/candidate exchange. The
caller side moves through
`idle -> awaiting_local_offer -> awaiting_remote_answer -> connected` and the
callee side through
`idle -> ringing -> awaiting_local_answer -> awaiting_connection ->
connected`. Any phase can move to `failed` when the negotiation primitive
rejects a description or candidate. Both `connected` and `failed` return to
`idle` when the call is hung up.

All events (inbound envelopes, local call triggers, primitive callbacks, and
timeouts) are processed one at a time. An event is fully processed, including
every awaited primitive operation, before the next event is taken.
"""
from __future__ import annotations

import asyncio
import dataclasses
import enum
import functools
import logging
from typing import Any
from typing import Awaitable
from typing import Callable
from typing import Optional
from typing import Protocol
from typing import runtime_checkable

import websockets.exceptions

from callrelay.exceptions import CallInProgressError
from callrelay.exceptions import NegotiationPrimitiveError
from callrelay.exceptions import NegotiationTimeoutError
from callrelay.exceptions import PeerBusyError
from callrelay.exceptions import SignalingClientError
from callrelay.messages import Answer
from callrelay.messages import Busy
from callrelay.messages import Envelope
from callrelay.messages import IceCandidate
from callrelay.messages import Offer
from callrelay.messages import StartCall
from callrelay.utils.tasks import spawn_guarded_background_task

logger = logging.getLogger(__name__)


class Phase(enum.Enum):
    """Phases of a negotiation session."""

    idle = 'idle'
    """No session exists."""
    ringing = 'ringing'
    """Callee was notified of an incoming call."""
    awaiting_local_offer = 'awaiting_local_offer'
    """Caller is creating its offer."""
    awaiting_remote_answer = 'awaiting_remote_answer'
    """Caller sent its offer and waits on the answer."""
    awaiting_local_answer = 'awaiting_local_answer'
    """Callee received an offer and is creating its answer."""
    awaiting_connection = 'awaiting_connection'
    """Callee sent its answer and waits on the peer connection."""
    connected = 'connected'
    """Offer and answer were exchanged and the call is established."""
    failed = 'failed'
    """The negotiation failed."""


class Role(enum.Enum):
    """Role of the local participant in a session."""

    caller = 'caller'
    callee = 'callee'


@dataclasses.dataclass
class NegotiationSession:
    """The in-flight peer relationship of a local participant.

    Attributes:
        remote_name: Name of the remote participant.
        role: Role of the local participant.
        phase: Current phase.
        error: Error that moved the session to
            [`Phase.failed`][callrelay.negotiation.Phase.failed].
    """

    remote_name: str
    role: Role
    phase: Phase
    error: Exception | None = None


@runtime_checkable
class NegotiationPrimitive(Protocol):
    """Interface to the local end of a peer connection.

    Session descriptions and candidates are opaque JSON serializable values.
    Operations raise
    [`NegotiationPrimitiveError`][callrelay.exceptions.NegotiationPrimitiveError]
    when a description or candidate is rejected.

    Registered callbacks are invoked as the underlying connection gathers
    candidates or changes state and must not be awaited from inside another
    operation of the primitive.
    """

    @property
    def local_description(self) -> Any:
        """Local description as applied, or `None` if not yet set."""
        ...

    async def create_offer(self) -> Any:
        """Create a session description offer."""
        ...

    async def create_answer(self) -> Any:
        """Create a session description answer to the remote offer."""
        ...

    async def set_local_description(self, description: Any) -> None:
        """Apply a local session description."""
        ...

    async def set_remote_description(self, description: Any) -> None:
        """Apply a remote session description."""
        ...

    async def add_ice_candidate(self, candidate: Any) -> None:
        """Add a remote ICE candidate."""
        ...

    async def close(self) -> None:
        """Close the peer connection."""
        ...

    def on_ice_candidate(
        self,
        callback: Callable[[Any], Awaitable[None]],
    ) -> None:
        """Register a callback for gathered local candidates."""
        ...

    def on_connection_state(
        self,
        callback: Callable[[str], Awaitable[None]],
    ) -> None:
        """Register a callback for connection state changes."""
        ...


SendCallback = Callable[[Envelope], Awaitable[None]]
# Errors raised by a send callback when the signaling connection is lost.
SEND_ERRORS = (
    SignalingClientError,
    websockets.exceptions.ConnectionClosed,
    OSError,
)
PhaseListener = Callable[[Phase, Optional[NegotiationSession]], None]


class Negotiator:
    """Negotiation state machine of a local participant.

    Example:
        ```python
        from callrelay.client import SignalingClient
        from callrelay.negotiation import Negotiator
        from callrelay.primitive import AiortcPrimitive

        async with SignalingClient(address, 'alice') as client:
            negotiator = Negotiator(client.send, AiortcPrimitive)
            await negotiator.call('bob')
            while negotiator.phase is not Phase.connected:
                await negotiator.handle(await client.recv())
        ```

    Note:
        Only one session is supported at a time. A `start_call` or offer
        from another participant while a session is in progress is rejected
        by replying with a [`Busy`][callrelay.messages.Busy] envelope.

        When both participants call each other at the same time, each
        receives an offer from the peer it is calling. If `local_name` is
        set, the participant whose name sorts first abandons its own offer
        and answers the incoming one while the other ignores the incoming
        offer and waits on the answer. Without `local_name`, or if the names
        are equal, both offers are ignored and the sessions wait on an
        answer until `answer_timeout` expires or the call is hung up.

        If `send` raises while a session is in progress, the session moves
        to `failed` and the error is re-raised.

    Args:
        send: Coroutine used to send envelopes to the signaling server.
        primitive_factory: Callable that returns a new negotiation primitive
            for each session.
        answer_timeout: Optional seconds to wait on the answer to an offer
            before failing the session.
        announce_calls: Send a `start_call` notification before the offer
            when starting a call.
        local_name: Name the local participant is logged in as. Used to
            resolve simultaneous calls between two participants.
    """

    def __init__(
        self,
        send: SendCallback,
        primitive_factory: Callable[[], NegotiationPrimitive],
        *,
        answer_timeout: float | None = None,
        announce_calls: bool = True,
        local_name: str | None = None,
    ) -> None:
        self._send = send
        self._primitive_factory = primitive_factory
        self._answer_timeout = answer_timeout
        self._announce_calls = announce_calls
        self._local_name = local_name

        self._lock = asyncio.Lock()
        self._listeners: list[PhaseListener] = []

        self._session: NegotiationSession | None = None
        self._primitive: NegotiationPrimitive | None = None
        self._remote_description_set = False
        self._pending_candidates: list[Any] = []
        self._timeout_task: asyncio.Task[None] | None = None

    @property
    def phase(self) -> Phase:
        """Phase of the current session or `idle` if there is none."""
        return Phase.idle if self._session is None else self._session.phase

    @property
    def session(self) -> NegotiationSession | None:
        """Current negotiation session."""
        return self._session

    @property
    def primitive(self) -> NegotiationPrimitive | None:
        """Negotiation primitive of the current session."""
        return self._primitive

    def add_listener(self, listener: PhaseListener) -> None:
        """Register a callback invoked on every phase change.

        Args:
            listener: Callable invoked with the new phase and the session.
                The session is `None` when the phase is `idle`.
        """
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in self._listeners:
            listener(self.phase, self._session)

    def _set_phase(self, phase: Phase) -> None:
        assert self._session is not None
        logger.debug(
            f'Session with {self._session.remote_name}: '
            f'{self._session.phase.value} -> {phase.value}',
        )
        self._session.phase = phase
        self._notify()

    def _fail(self, error: Exception) -> None:
        assert self._session is not None
        logger.error(
            f'Negotiation with {self._session.remote_name} failed: '
            f'{type(error).__name__}: {error}',
        )
        self._session.error = error
        self._set_phase(Phase.failed)

    def _engaged_with_other(self, name: str) -> bool:
        return (
            self._session is not None
            and self._session.phase is not Phase.failed
            and self._session.remote_name != name
        )

    def _start_session(
        self,
        remote_name: str,
        role: Role,
        phase: Phase,
    ) -> NegotiationPrimitive:
        primitive = self._primitive_factory()
        primitive.on_ice_candidate(
            functools.partial(self._on_local_candidate, primitive),
        )
        primitive.on_connection_state(
            functools.partial(self._on_connection_state, primitive),
        )
        self._primitive = primitive
        self._session = NegotiationSession(remote_name, role, phase)
        logger.info(
            f'Started session with {remote_name} as {role.value}',
        )
        self._notify()
        return primitive

    async def _end_session(self) -> None:
        if self._timeout_task is not None:
            self._timeout_task.cancel()
            self._timeout_task = None

        primitive, self._primitive = self._primitive, None
        session, self._session = self._session, None
        self._remote_description_set = False
        self._pending_candidates.clear()

        if primitive is not None:
            try:
                await primitive.close()
            except NegotiationPrimitiveError as e:
                logger.warning(f'Error closing negotiation primitive: {e}')

        if session is not None:
            logger.info(f'Ended session with {session.remote_name}')
            self._notify()

    async def _apply_remote_description(self, description: Any) -> None:
        assert self._primitive is not None
        await self._primitive.set_remote_description(description)
        self._remote_description_set = True
        candidates = list(self._pending_candidates)
        self._pending_candidates.clear()
        for candidate in candidates:
            await self._primitive.add_ice_candidate(candidate)
        if len(candidates) > 0:
            logger.debug(f'Applied {len(candidates)} buffered candidate(s)')

    async def _send_in_session(self, envelope: Envelope) -> None:
        try:
            await self._send(envelope)
        except SEND_ERRORS as e:
            self._fail(e)
            raise

    def _yields_to(self, name: str) -> bool:
        # Both sides sent an offer so the name sorting first answers.
        return (
            self._local_name is not None
            and self._session is not None
            and self._session.role is Role.caller
            and self._session.phase is Phase.awaiting_remote_answer
            and self._session.remote_name == name
            and self._local_name < name
        )

    async def _reject_busy(self, name: str, channel: str) -> None:
        assert self._session is not None
        logger.info(
            f'Rejecting {channel} from {name} because a session with '
            f'{self._session.remote_name} is in progress',
        )
        await self._send(Busy(other_person=name))

    async def call(self, remote_name: str) -> NegotiationSession:
        """Start a call with a remote participant.

        Creates and applies the local offer and sends it addressed to
        `remote_name`. The session enters `awaiting_remote_answer` only after
        the offer has been sent.

        Args:
            remote_name: Name of the participant to call.

        Returns:
            The new session. The session is `failed` if the primitive could
            not create the offer.

        Raises:
            CallInProgressError: If a session that has not failed exists.
            SignalingClientError: If `send` fails because the signaling
                connection is lost. Transport errors raised by `send` are
                re-raised as is. The session is `failed` in either case.
        """
        async with self._lock:
            if (
                self._session is not None
                and self._session.phase is not Phase.failed
            ):
                raise CallInProgressError(
                    f'Cannot call {remote_name} while a session with '
                    f'{self._session.remote_name} is '
                    f'{self._session.phase.value}.',
                )
            await self._end_session()

            primitive = self._start_session(
                remote_name,
                Role.caller,
                Phase.awaiting_local_offer,
            )
            session = self._session
            assert session is not None

            if self._announce_calls:
                await self._send_in_session(
                    StartCall(other_person=remote_name),
                )

            try:
                offer = await primitive.create_offer()
                await primitive.set_local_description(offer)
            except NegotiationPrimitiveError as e:
                self._fail(e)
                return session

            await self._send_in_session(
                Offer(
                    other_person=remote_name,
                    offer=primitive.local_description,
                ),
            )
            logger.info(f'Sent offer to {remote_name}')
            self._set_phase(Phase.awaiting_remote_answer)

            if self._answer_timeout is not None:
                self._timeout_task = spawn_guarded_background_task(
                    self._expire_offer,
                    primitive,
                    self._answer_timeout,
                    name=f'negotiation-answer-timeout-{remote_name}',
                )

            return session

    async def hang_up(self) -> None:
        """End the current session and return to `idle`.

        This is a no-op if there is no session.
        """
        async with self._lock:
            await self._end_session()

    async def close(self) -> None:
        """End the current session."""
        await self.hang_up()

    async def handle(self, envelope: Envelope) -> None:
        """Handle an envelope received from the signaling server.

        Args:
            envelope: Received envelope. The `other_person` field is the
                name of the sender.
        """
        async with self._lock:
            if isinstance(envelope, StartCall):
                await self._handle_start_call(envelope)
            elif isinstance(envelope, Offer):
                await self._handle_offer(envelope)
            elif isinstance(envelope, Answer):
                await self._handle_answer(envelope)
            elif isinstance(envelope, IceCandidate):
                await self._handle_ice_candidate(envelope)
            elif isinstance(envelope, Busy):
                self._handle_busy(envelope)
            else:
                logger.warning(
                    'Ignoring unexpected envelope '
                    f'{type(envelope).__name__}',
                )

    async def _handle_start_call(self, envelope: StartCall) -> None:
        name = envelope.other_person
        if self._engaged_with_other(name):
            await self._reject_busy(name, envelope.channel.value)
            return
        if (
            self._session is not None
            and self._session.phase is not Phase.failed
        ):
            logger.debug(f'Ignoring repeated start_call from {name}')
            return

        await self._end_session()
        logger.info(f'Receiving call from {name}')
        self._start_session(name, Role.callee, Phase.ringing)

    async def _handle_offer(self, envelope: Offer) -> None:
        name = envelope.other_person
        if self._engaged_with_other(name):
            await self._reject_busy(name, envelope.channel.value)
            return
        if self._yields_to(name):
            logger.info(
                f'Call to {name} crossed with a call from {name}; '
                'answering the incoming call',
            )
            await self._end_session()
        elif self._session is not None and self._session.phase not in (
            Phase.ringing,
            Phase.failed,
        ):
            logger.warning(
                f'Ignoring offer from {name} in phase '
                f'{self._session.phase.value}',
            )
            return

        if self._session is None or self._session.phase is Phase.failed:
            await self._end_session()
            self._start_session(name, Role.callee, Phase.ringing)

        logger.info(f'Received offer from {name}')
        self._set_phase(Phase.awaiting_local_answer)
        primitive = self._primitive
        assert primitive is not None

        try:
            await self._apply_remote_description(envelope.offer)
            answer = await primitive.create_answer()
            await primitive.set_local_description(answer)
        except NegotiationPrimitiveError as e:
            self._fail(e)
            return

        await self._send_in_session(
            Answer(other_person=name, answer=primitive.local_description),
        )
        logger.info(f'Sent answer to {name}')
        self._set_phase(Phase.awaiting_connection)

    async def _handle_answer(self, envelope: Answer) -> None:
        name = envelope.other_person
        if (
            self._session is None
            or self._session.phase is not Phase.awaiting_remote_answer
            or self._session.remote_name != name
        ):
            logger.warning(
                f'Ignoring stale answer from {name} in phase '
                f'{self.phase.value}',
            )
            return

        logger.info(f'Received answer from {name}')
        if self._timeout_task is not None:
            self._timeout_task.cancel()
            self._timeout_task = None

        try:
            await self._apply_remote_description(envelope.answer)
        except NegotiationPrimitiveError as e:
            self._fail(e)
            return

        self._set_phase(Phase.connected)

    async def _handle_ice_candidate(self, envelope: IceCandidate) -> None:
        name = envelope.other_person
        if (
            self._session is None
            or self._session.remote_name != name
            or self._session.phase is Phase.failed
        ):
            logger.debug(f'Dropping candidate from {name} with no session')
            return

        if not self._remote_description_set:
            self._pending_candidates.append(envelope.candidate)
            logger.debug(f'Buffered candidate from {name}')
            return

        assert self._primitive is not None
        try:
            await self._primitive.add_ice_candidate(envelope.candidate)
        except NegotiationPrimitiveError as e:
            self._fail(e)

    def _handle_busy(self, envelope: Busy) -> None:
        name = envelope.other_person
        if (
            self._session is not None
            and self._session.role is Role.caller
            and self._session.remote_name == name
            and self._session.phase
            in (Phase.awaiting_local_offer, Phase.awaiting_remote_answer)
        ):
            self._fail(PeerBusyError(f'{name} is busy with another call.'))
        else:
            logger.debug(f'Ignoring busy from {name}')

    async def _on_local_candidate(
        self,
        primitive: NegotiationPrimitive,
        candidate: Any,
    ) -> None:
        async with self._lock:
            if (
                primitive is not self._primitive
                or self._session is None
                or self._session.phase is Phase.failed
            ):
                return
            try:
                await self._send_in_session(
                    IceCandidate(
                        other_person=self._session.remote_name,
                        candidate=candidate,
                    ),
                )
            except SEND_ERRORS:
                # The session was failed and the error logged.
                return

    async def _on_connection_state(
        self,
        primitive: NegotiationPrimitive,
        state: str,
    ) -> None:
        async with self._lock:
            if primitive is not self._primitive or self._session is None:
                return
            logger.debug(
                f'Peer connection with {self._session.remote_name} is {state}',
            )
            if (
                state == 'connected'
                and self._session.phase is Phase.awaiting_connection
            ):
                self._set_phase(Phase.connected)
            elif (
                state == 'failed'
                and self._session.phase is not Phase.failed
            ):
                self._fail(
                    NegotiationPrimitiveError('The peer connection failed.'),
                )

    async def _expire_offer(
        self,
        primitive: NegotiationPrimitive,
        timeout: float,
    ) -> None:
        await asyncio.sleep(timeout)
        async with self._lock:
            if (
                primitive is self._primitive
                and self._session is not None
                and self._session.phase is Phase.awaiting_remote_answer
            ):
                self._timeout_task = None
                self._fail(
                    NegotiationTimeoutError(
                        f'{self._session.remote_name} did not answer within '
                        f'{timeout} seconds.',
                    ),
                )
