r"""
Peer Link Negotiator

Design Decision: Explicit State Machine
=======================================

WebRTC negotiation is driven by callbacks (description ready, channel
open, connection failed...). Keeping the state implicit in those callbacks
makes two rules hard to check:
- only the caller reconnects after a failure
- ICE candidates may arrive before the remote description and must wait

So the states, events and transitions are data (TRANSITIONS below) and
LinkStateMachine is pure: it has no I/O and is tested on its own.
DirectChannelLink drives it with aiortc.

```
            START_OFFER                 CHANNEL_OPEN
  IDLE ---------------> OFFERING ------------------> CONNECTED
    |                      ^   \                        |
    | REMOTE_OFFER         |    \ CHANNEL_CLOSED        | CHANNEL_CLOSED
    v                      |     v                      v
  ANSWERING ----------> CLOSED <------------------------+
      CHANNEL_OPEN -> CONNECTED
  CLOSED --RETRY (caller only)--> OFFERING
  CLOSED --REMOTE_OFFER---------> ANSWERING
```
Signals are sent as `{type: signal, to, sdp: {type, sdp}}` or
`{type: signal, to, ice: {candidate, sdpMid, sdpMLineIndex}}`.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from ..exceptions import InvalidTransition, NegotiationError
from .transport import Transport

logger = logging.getLogger(__name__)

CHANNEL_LABEL = 'data-channel'


class LinkState(Enum):
    IDLE = 'idle'
    OFFERING = 'offering'
    ANSWERING = 'answering'
    CONNECTED = 'connected'
    CLOSED = 'closed'


class LinkEvent(Enum):
    START_OFFER = 'start_offer'
    REMOTE_OFFER = 'remote_offer'
    REMOTE_ANSWER = 'remote_answer'
    CHANNEL_OPEN = 'channel_open'
    CHANNEL_CLOSED = 'channel_closed'
    RETRY = 'retry'
    CLOSE = 'close'


class Role(Enum):
    CALLER = 'caller'
    CALLEE = 'callee'


# (state, event) -> next state
TRANSITIONS: Dict[Tuple[LinkState, LinkEvent], LinkState] = {
    (LinkState.IDLE, LinkEvent.START_OFFER): LinkState.OFFERING,
    (LinkState.IDLE, LinkEvent.REMOTE_OFFER): LinkState.ANSWERING,

    (LinkState.OFFERING, LinkEvent.REMOTE_ANSWER): LinkState.OFFERING,
    (LinkState.OFFERING, LinkEvent.CHANNEL_OPEN): LinkState.CONNECTED,
    (LinkState.OFFERING, LinkEvent.CHANNEL_CLOSED): LinkState.CLOSED,
    # Glare: both sides offered; the remote offer wins, we answer
    (LinkState.OFFERING, LinkEvent.REMOTE_OFFER): LinkState.ANSWERING,

    (LinkState.ANSWERING, LinkEvent.CHANNEL_OPEN): LinkState.CONNECTED,
    (LinkState.ANSWERING, LinkEvent.CHANNEL_CLOSED): LinkState.CLOSED,
    (LinkState.ANSWERING, LinkEvent.REMOTE_OFFER): LinkState.ANSWERING,

    (LinkState.CONNECTED, LinkEvent.CHANNEL_CLOSED): LinkState.CLOSED,
    (LinkState.CONNECTED, LinkEvent.REMOTE_OFFER): LinkState.ANSWERING,

    (LinkState.CLOSED, LinkEvent.RETRY): LinkState.OFFERING,
    (LinkState.CLOSED, LinkEvent.REMOTE_OFFER): LinkState.ANSWERING,
    (LinkState.CLOSED, LinkEvent.CHANNEL_CLOSED): LinkState.CLOSED,
}

# Allowed only for one role
ROLE_RESTRICTED: Dict[LinkEvent, Role] = {
    LinkEvent.START_OFFER: Role.CALLER,
    LinkEvent.RETRY: Role.CALLER,
}


class LinkStateMachine:
    """
    State of one peer link, without any I/O.

    Also holds the ICE candidates that arrive before a remote description
    is known.
    """

    def __init__(self, role: Role):
        self.role = role
        self.state = LinkState.IDLE
        self.shutdown = False
        self.has_remote_description = False
        self._pending_candidates: List[Dict[str, Any]] = []

    @property
    def is_caller(self) -> bool:
        return self.role == Role.CALLER

    def can_apply(self, event: LinkEvent) -> bool:
        if self.shutdown and event != LinkEvent.CHANNEL_CLOSED:
            return False
        required = ROLE_RESTRICTED.get(event)
        if required is not None and required != self.role:
            return False
        return (self.state, event) in TRANSITIONS

    def apply(self, event: LinkEvent) -> LinkState:
        """Take a transition; raises InvalidTransition if not allowed."""
        if event == LinkEvent.CLOSE:
            self.shutdown = True
            self.state = LinkState.CLOSED
            return self.state

        if not self.can_apply(event):
            raise InvalidTransition(self.state, event)

        previous, self.state = self.state, TRANSITIONS[(self.state, event)]
        if event in (LinkEvent.START_OFFER, LinkEvent.RETRY, LinkEvent.REMOTE_OFFER):
            # New negotiation round: old remote description is gone
            self.has_remote_description = False
        logger.debug(f"{self.role.value}: {previous.name} --{event.name}--> {self.state.name}")
        return self.state

    def should_retry(self) -> bool:
        """Only the caller re-offers after the link closes."""
        return (
            self.state == LinkState.CLOSED
            and not self.shutdown
            and self.can_apply(LinkEvent.RETRY)
        )

    # === Candidate buffering ===

    def add_candidate(self, candidate: Dict[str, Any]) -> bool:
        """
        Accept a remote candidate in any state.

        Returns:
            True if it can be applied now, False if it was buffered
        """
        if self.has_remote_description:
            return True
        self._pending_candidates.append(candidate)
        return False

    def remote_description_set(self) -> List[Dict[str, Any]]:
        """Mark the remote description applied; returns the buffered candidates."""
        self.has_remote_description = True
        pending, self._pending_candidates = self._pending_candidates, []
        return pending

    @property
    def pending_candidates(self) -> int:
        return len(self._pending_candidates)


SignalSender = Callable[[Dict[str, Any]], Awaitable[None]]


def rtc_configuration(ice_servers: List[str]) -> RTCConfiguration:
    return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in ice_servers])


def parse_candidate(ice: Dict[str, Any]):
    """Build an aiortc RTCIceCandidate from a browser-style candidate dict."""
    line = ice.get('candidate') or ''
    if line.startswith('candidate:'):
        line = line[len('candidate:'):]
    candidate = candidate_from_sdp(line)
    candidate.sdpMid = ice.get('sdpMid')
    candidate.sdpMLineIndex = ice.get('sdpMLineIndex')
    return candidate


class DirectChannelLink(Transport):
    """
    Direct data channel to one peer, negotiated through the relay.

    The caller creates the data channel and the offer; the callee answers
    and receives the channel. When the link drops, the caller negotiates
    again after `retry_delay`; the callee waits for that new offer.
    """

    def __init__(self, peer_id: str, send_signal: SignalSender, role: Role,
                 ice_servers: List[str] = None, retry_delay: float = 1.0):
        super().__init__(peer_id)
        self.machine = LinkStateMachine(role)
        self.retry_delay = retry_delay
        self._send_signal = send_signal
        self._configuration = rtc_configuration(ice_servers or [])
        self._pc: Optional[RTCPeerConnection] = None
        self._channel = None
        self._retry_task: Optional[asyncio.Task] = None
        self._tasks = set()

    @property
    def state(self) -> LinkState:
        return self.machine.state

    @property
    def is_caller(self) -> bool:
        return self.machine.is_caller

    @property
    def is_open(self) -> bool:
        return (
            self.machine.state == LinkState.CONNECTED
            and self._channel is not None
            and self._channel.readyState == 'open'
        )

    # === Negotiation ===

    async def start(self):
        """Caller side: open a channel and send an offer."""
        self.machine.apply(LinkEvent.START_OFFER)
        await self._offer()

    def start_soon(self) -> asyncio.Task:
        """Schedule start() on the running loop."""
        return self._spawn(self.start())

    async def _offer(self):
        await self._reset_connection()
        pc = self._new_connection()
        channel = pc.createDataChannel(CHANNEL_LABEL, ordered=True)
        self._wire_channel(channel)

        try:
            await pc.setLocalDescription(await pc.createOffer())
        except Exception as e:
            self._on_error(e)
            return
        await self._send_description(pc)

    async def handle_signal(self, message: Dict[str, Any]):
        """Feed an `sdp` or `ice` signal received from the remote peer."""
        if self.machine.shutdown:
            return

        if message.get('sdp'):
            await self._on_remote_description(message['sdp'])
        elif message.get('ice'):
            await self._on_remote_candidate(message['ice'])
        else:
            logger.warning(f"Signal from {self.peer_id} without sdp or ice")

    async def _on_remote_description(self, sdp: Dict[str, Any]):
        description = RTCSessionDescription(sdp=sdp.get('sdp', ''), type=sdp.get('type', ''))

        if description.type == 'offer':
            was_open = self.state == LinkState.CONNECTED
            self.machine.apply(LinkEvent.REMOTE_OFFER)
            await self._reset_connection()
            if was_open:
                self._notify_closed()
            pc = self._new_connection()
        elif description.type == 'answer':
            if not self.machine.can_apply(LinkEvent.REMOTE_ANSWER) or self._pc is None:
                logger.warning(f"Unexpected answer from {self.peer_id} in state {self.state.name}")
                return
            self.machine.apply(LinkEvent.REMOTE_ANSWER)
            pc = self._pc
        else:
            logger.warning(f"Unsupported description type {description.type!r} from {self.peer_id}")
            return

        try:
            await pc.setRemoteDescription(description)
            for candidate in self.machine.remote_description_set():
                await self._add_candidate(pc, candidate)

            if description.type == 'offer':
                await pc.setLocalDescription(await pc.createAnswer())
                await self._send_description(pc)
        except Exception as e:
            self._on_error(e)

    async def _on_remote_candidate(self, ice: Dict[str, Any]):
        if not self.machine.add_candidate(ice) or self._pc is None:
            return
        await self._add_candidate(self._pc, ice)

    async def _add_candidate(self, pc: RTCPeerConnection, ice: Dict[str, Any]):
        try:
            await pc.addIceCandidate(parse_candidate(ice))
        except Exception as e:
            logger.warning(f"Ignoring bad ICE candidate from {self.peer_id}: {e}")

    async def _send_description(self, pc: RTCPeerConnection):
        description = pc.localDescription
        await self._send_signal({
            'type': 'signal',
            'to': self.peer_id,
            'sdp': {'type': description.type, 'sdp': description.sdp},
        })

    # === Connection wiring ===

    def _new_connection(self) -> RTCPeerConnection:
        pc = RTCPeerConnection(self._configuration)
        self._pc = pc

        @pc.on('connectionstatechange')
        async def _on_state_change():
            logger.debug(f"Link to {self.peer_id}: connection {pc.connectionState}")
            if pc is not self._pc:
                return
            if pc.connectionState in ('failed', 'disconnected', 'closed'):
                self._on_channel_closed()

        @pc.on('datachannel')
        def _on_datachannel(channel):
            self._wire_channel(channel)

        return pc

    def _wire_channel(self, channel):
        self._channel = channel

        @channel.on('open')
        def _on_open():
            if channel is self._channel:
                self._on_channel_opened()

        @channel.on('message')
        def _on_message(message):
            if channel is self._channel:
                self.deliver(message)

        @channel.on('close')
        def _on_close():
            if channel is self._channel:
                self._on_channel_closed()

        # Callee receives an already-open channel
        if channel.readyState == 'open':
            self._on_channel_opened()

    def _on_channel_opened(self):
        if not self.machine.can_apply(LinkEvent.CHANNEL_OPEN):
            return
        self.machine.apply(LinkEvent.CHANNEL_OPEN)
        logger.info(f"Direct channel open with {self.peer_id} ({self.machine.role.value})")
        self._notify_open()

    def _on_channel_closed(self):
        if self.state == LinkState.CLOSED or not self.machine.can_apply(LinkEvent.CHANNEL_CLOSED):
            return
        was_open = self.state == LinkState.CONNECTED
        self.machine.apply(LinkEvent.CHANNEL_CLOSED)
        logger.info(f"Direct channel closed with {self.peer_id}")
        if was_open:
            self._notify_closed()
        if self.machine.should_retry():
            self._schedule_retry()

    def _on_error(self, error: Exception):
        logger.error(f"Negotiation with {self.peer_id} failed: {error}")
        self._on_channel_closed()

    def _schedule_retry(self):
        if self._retry_task is not None and not self._retry_task.done():
            return
        self._retry_task = self._spawn(self._retry())

    async def _retry(self):
        await asyncio.sleep(self.retry_delay)
        if not self.machine.should_retry():
            return
        logger.info(f"Reconnecting to {self.peer_id}")
        self.machine.apply(LinkEvent.RETRY)
        await self._offer()

    def refresh(self):
        """Re-offer if the link is down and we are the caller."""
        if self.state in (LinkState.CONNECTED, LinkState.OFFERING, LinkState.ANSWERING):
            return
        if self.state == LinkState.IDLE and self.is_caller:
            self.start_soon()
        elif self.machine.should_retry():
            self._schedule_retry()

    # === Transport ===

    async def send(self, data: Union[bytes, str]):
        if not self.is_open:
            return
        self._channel.send(data)

    async def close(self):
        if self.machine.shutdown:
            return
        was_open = self.state == LinkState.CONNECTED
        self.machine.apply(LinkEvent.CLOSE)
        if self._retry_task is not None and not self._retry_task.done():
            self._retry_task.cancel()
        await self._reset_connection()
        self._stop_pump()
        if was_open:
            self._notify_closed()

    async def _reset_connection(self):
        pc, self._pc = self._pc, None
        channel, self._channel = self._channel, None
        if channel is not None and channel.readyState != 'closed':
            channel.close()
        if pc is not None and pc.connectionState != 'closed':
            await pc.close()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def __repr__(self):
        return (f"<DirectChannelLink peer={self.peer_id} role={self.machine.role.value} "
                f"state={self.state.name}>")


def check_signal(message: Dict[str, Any]):
    """Raise NegotiationError for a signal envelope that cannot be routed."""
    if not message.get('sender'):
        raise NegotiationError("Signal without sender")
    if not (message.get('sdp') or message.get('ice')):
        raise NegotiationError(f"Signal from {message['sender']} without sdp or ice")
