import warnings
from pathlib import Path

import pytest

from dropzone.exceptions import InvalidTransition, NegotiationError
from dropzone.peer import negotiator
from dropzone.peer.negotiator import (
    DirectChannelLink,
    LinkEvent,
    LinkState,
    LinkStateMachine,
    Role,
    check_signal,
    parse_candidate,
)

ICE = {
    'candidate': 'candidate:1 1 udp 2130706431 192.168.1.5 54321 typ host',
    'sdpMid': '0',
    'sdpMLineIndex': 0,
}


def test_caller_happy_path():
    machine = LinkStateMachine(Role.CALLER)
    assert machine.apply(LinkEvent.START_OFFER) == LinkState.OFFERING
    assert machine.apply(LinkEvent.REMOTE_ANSWER) == LinkState.OFFERING
    assert machine.apply(LinkEvent.CHANNEL_OPEN) == LinkState.CONNECTED


def test_callee_happy_path():
    machine = LinkStateMachine(Role.CALLEE)
    assert machine.apply(LinkEvent.REMOTE_OFFER) == LinkState.ANSWERING
    assert machine.apply(LinkEvent.CHANNEL_OPEN) == LinkState.CONNECTED


def test_only_caller_offers():
    machine = LinkStateMachine(Role.CALLEE)
    assert not machine.can_apply(LinkEvent.START_OFFER)
    with pytest.raises(InvalidTransition) as excinfo:
        machine.apply(LinkEvent.START_OFFER)
    assert excinfo.value.state == LinkState.IDLE
    assert excinfo.value.event == LinkEvent.START_OFFER


def test_only_caller_retries():
    caller = LinkStateMachine(Role.CALLER)
    for event in (LinkEvent.START_OFFER, LinkEvent.CHANNEL_OPEN, LinkEvent.CHANNEL_CLOSED):
        caller.apply(event)
    assert caller.state == LinkState.CLOSED
    assert caller.should_retry()
    assert caller.apply(LinkEvent.RETRY) == LinkState.OFFERING

    callee = LinkStateMachine(Role.CALLEE)
    for event in (LinkEvent.REMOTE_OFFER, LinkEvent.CHANNEL_OPEN, LinkEvent.CHANNEL_CLOSED):
        callee.apply(event)
    assert callee.state == LinkState.CLOSED
    assert not callee.should_retry()
    with pytest.raises(InvalidTransition):
        callee.apply(LinkEvent.RETRY)

    # the callee recovers when the caller offers again
    assert callee.apply(LinkEvent.REMOTE_OFFER) == LinkState.ANSWERING


def test_invalid_transitions():
    machine = LinkStateMachine(Role.CALLER)
    with pytest.raises(InvalidTransition):
        machine.apply(LinkEvent.CHANNEL_OPEN)
    with pytest.raises(InvalidTransition):
        machine.apply(LinkEvent.REMOTE_ANSWER)
    assert machine.state == LinkState.IDLE


def test_remote_offer_wins_glare():
    machine = LinkStateMachine(Role.CALLER)
    machine.apply(LinkEvent.START_OFFER)
    assert machine.apply(LinkEvent.REMOTE_OFFER) == LinkState.ANSWERING


def test_close_is_final():
    machine = LinkStateMachine(Role.CALLER)
    machine.apply(LinkEvent.START_OFFER)
    machine.apply(LinkEvent.CLOSE)

    assert machine.state == LinkState.CLOSED
    assert machine.shutdown
    assert not machine.should_retry()
    assert not machine.can_apply(LinkEvent.REMOTE_OFFER)


def test_candidates_wait_for_remote_description():
    machine = LinkStateMachine(Role.CALLEE)
    assert machine.add_candidate({'candidate': 'a'}) is False
    assert machine.add_candidate({'candidate': 'b'}) is False
    assert machine.pending_candidates == 2

    machine.apply(LinkEvent.REMOTE_OFFER)
    flushed = machine.remote_description_set()
    assert [c['candidate'] for c in flushed] == ['a', 'b']
    assert machine.pending_candidates == 0
    assert machine.add_candidate({'candidate': 'c'}) is True


def test_new_round_forgets_remote_description():
    machine = LinkStateMachine(Role.CALLER)
    machine.apply(LinkEvent.START_OFFER)
    machine.remote_description_set()
    machine.apply(LinkEvent.CHANNEL_OPEN)
    machine.apply(LinkEvent.CHANNEL_CLOSED)
    machine.apply(LinkEvent.RETRY)

    assert machine.add_candidate({'candidate': 'late'}) is False


def test_check_signal():
    check_signal({'sender': 'a', 'sdp': {'type': 'offer', 'sdp': 'v=0'}})
    check_signal({'sender': 'a', 'ice': ICE})
    with pytest.raises(NegotiationError):
        check_signal({'sdp': {'type': 'offer'}})
    with pytest.raises(NegotiationError):
        check_signal({'sender': 'a'})


def test_parse_candidate():
    candidate = parse_candidate(ICE)
    assert candidate.ip == '192.168.1.5'
    assert candidate.port == 54321
    assert candidate.type == 'host'
    assert candidate.sdpMid == '0'
    assert candidate.sdpMLineIndex == 0


@pytest.mark.asyncio
async def test_link_buffers_early_candidates():
    sent = []

    async def send_signal(message):
        sent.append(message)

    link = DirectChannelLink('remote', send_signal, Role.CALLEE)
    await link.handle_signal({'type': 'signal', 'sender': 'remote', 'ice': ICE})

    assert link.machine.pending_candidates == 1
    assert link.state == LinkState.IDLE
    assert not link.is_open
    assert sent == []

    # a link that is not open drops sends
    await link.send(b'data')
    await link.close()
    assert link.machine.shutdown


@pytest.mark.asyncio
async def test_callee_refresh_does_not_offer():
    async def send_signal(message):
        raise AssertionError('callee must not signal first')

    link = DirectChannelLink('remote', send_signal, Role.CALLEE)
    link.refresh()
    assert link.state == LinkState.IDLE
    await link.close()


@pytest.mark.asyncio
async def test_unexpected_answer_is_ignored():
    async def send_signal(message):
        pass

    link = DirectChannelLink('remote', send_signal, Role.CALLEE)
    await link.handle_signal({'sender': 'remote', 'sdp': {'type': 'answer', 'sdp': 'v=0'}})
    assert link.state == LinkState.IDLE
    await link.close()


def test_module_source_has_no_escape_warnings():
    path = Path(negotiator.__file__)
    with warnings.catch_warnings():
        warnings.simplefilter('error')
        compile(path.read_text(), str(path), 'exec')
