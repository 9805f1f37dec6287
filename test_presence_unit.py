"""
Unit tests for PresenceTracker: sticky agent presence and chat-scoped,
expiring typing indicators. Uses a hand-driven clock.
"""
import pytest

from supportchat.db.models import Message
from supportchat.presence import PresenceTracker

pytestmark = pytest.mark.presence


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def _msg(test_data, mid, sender_type="user", sender_name="Guest", chat_id=7, offset=0) -> Message:
    return Message.from_payload(test_data.message(mid=mid, chat_id=chat_id, sender_type=sender_type,
                                                  sender_name=sender_name, offset=offset))


# ─────────────────────────────────────────────
# Presence
# ─────────────────────────────────────────────

class TestPresence:
    def test_offline_until_agent_evidence(self, test_data):
        tracker = PresenceTracker(7)
        assert tracker.observe_message(_msg(test_data, 101)) is False
        assert tracker.agent_online is False
        assert tracker.observe_message(_msg(test_data, 102, "admin", "agentA")) is True
        assert tracker.agent_online is True
        assert tracker.agent_name == "agentA"

    def test_presence_is_sticky(self, test_data):
        tracker = PresenceTracker(7)
        tracker.observe_message(_msg(test_data, 101, "admin", "agentA"))
        for mid in range(102, 110):
            tracker.observe_message(_msg(test_data, mid, offset=mid))
        assert tracker.agent_online is True
        assert tracker.agent_name == "agentA"

    def test_later_agent_message_updates_name(self, test_data):
        tracker = PresenceTracker(7)
        tracker.observe_message(_msg(test_data, 101, "admin", "agentA"))
        tracker.observe_message(_msg(test_data, 102, "admin", "agentB", offset=1))
        assert tracker.agent_name == "agentB"

    def test_system_agent_name_counts(self, test_data):
        tracker = PresenceTracker(7, system_agent_names=["Admin Runtera"])
        tracker.observe_message(_msg(test_data, 101, "system", "Admin Runtera"))
        assert tracker.agent_online is True
        assert tracker.agent_name == "Admin Runtera"

    def test_other_chat_ignored(self, test_data):
        tracker = PresenceTracker(7)
        tracker.observe_message(_msg(test_data, 101, "admin", "agentA", chat_id=5))
        assert tracker.agent_online is False

    def test_scan_uses_first_agent_message(self, test_data):
        tracker = PresenceTracker(7)
        log = [
            _msg(test_data, 101),
            _msg(test_data, 102, "admin", "agentA", offset=1),
            _msg(test_data, 103, "admin", "agentB", offset=2),
        ]
        assert tracker.scan(log) is True
        assert tracker.agent_name == "agentA"

    def test_rescan_keeps_latest_name(self, test_data):
        tracker = PresenceTracker(7)
        first = _msg(test_data, 101, "admin", "agentA")
        later = _msg(test_data, 102, "admin", "agentB", offset=1)
        tracker.scan([first])
        tracker.observe_message(later)
        assert tracker.scan([first, later]) is False
        assert tracker.agent_name == "agentB"

    def test_admin_status_hint(self, test_data):
        tracker = PresenceTracker(7)
        assert tracker.observe_admin_status("5", "agentX") is False
        assert tracker.observe_admin_status(7, "agentA") is True
        assert tracker.agent_name == "agentA"

    def test_admin_status_does_not_override_name(self, test_data):
        tracker = PresenceTracker(7)
        tracker.observe_message(_msg(test_data, 101, "admin", "agentA"))
        assert tracker.observe_admin_status(7, "agentB") is False
        assert tracker.agent_name == "agentA"

    def test_chat_agent_only_as_fallback(self):
        tracker = PresenceTracker(7)
        assert tracker.observe_chat_agent(None) is False
        assert tracker.observe_chat_agent("agentA") is True
        assert tracker.observe_chat_agent("agentB") is False
        assert tracker.agent_name == "agentA"


# ─────────────────────────────────────────────
# Typing
# ─────────────────────────────────────────────

class TestTyping:
    def test_typing_scoped_to_chat(self):
        tracker = PresenceTracker(7, typing_timeout=8, clock=FakeClock())
        assert tracker.observe_typing(5, True, "agentA") is False
        assert tracker.is_typing is False
        assert tracker.observe_typing("7", True, "agentA") is True
        assert tracker.is_typing is True
        assert tracker.typing_name == "agentA"

    def test_stop_signal_clears(self):
        tracker = PresenceTracker(7, typing_timeout=8, clock=FakeClock())
        tracker.observe_typing(7, True, "agentA")
        tracker.observe_typing(7, False, "agentA")
        assert tracker.is_typing is False
        assert tracker.typing_name is None

    def test_typing_expires(self):
        clock = FakeClock()
        tracker = PresenceTracker(7, typing_timeout=8, clock=clock)
        tracker.observe_typing(7, True, "agentA")
        clock.advance(7.9)
        assert tracker.is_typing is True
        clock.advance(0.2)
        state = tracker.state()
        assert state.is_typing is False
        assert state.typing_name is None

    def test_new_start_signal_restarts_timer(self):
        clock = FakeClock()
        tracker = PresenceTracker(7, typing_timeout=8, clock=clock)
        tracker.observe_typing(7, True, "agentA")
        clock.advance(6)
        tracker.observe_typing(7, True, "agentA")
        clock.advance(6)
        assert tracker.is_typing is True

    def test_zero_timeout_never_expires(self):
        clock = FakeClock()
        tracker = PresenceTracker(7, typing_timeout=0, clock=clock)
        tracker.observe_typing(7, True, "agentA")
        clock.advance(3600)
        assert tracker.is_typing is True

    def test_typing_does_not_affect_presence(self):
        tracker = PresenceTracker(7, typing_timeout=8, clock=FakeClock())
        tracker.observe_typing(7, True, "agentA")
        assert tracker.agent_online is False
