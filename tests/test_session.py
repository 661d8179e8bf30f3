"""Tests for the session state machine and message translation."""

import pytest

from cryptonote_ws_proxy.config.models import ReconnectConfig, SessionConfig
from cryptonote_ws_proxy.cryptonote.messages import (
    CryptoNoteNotification,
    CryptoNoteResponse,
)
from cryptonote_ws_proxy.proxy.constants import REASON_INACTIVE, REASON_MAX_RECONNECTS
from cryptonote_ws_proxy.proxy.events import (
    CancelReconnect,
    ClientClosed,
    ClientMessageReceived,
    ClientPong,
    ClientProtocolError,
    CloseRequested,
    CloseSession,
    CloseUpstream,
    HeartbeatTick,
    KeepaliveDue,
    OpenUpstream,
    PingClient,
    ReconnectDue,
    ScheduleReconnect,
    SessionStarted,
    StartKeepalive,
    StopKeepalive,
    UpstreamClosed,
    UpstreamConnected,
    UpstreamConnectFailed,
    UpstreamIdleTimeout,
    UpstreamMessageReceived,
)
from cryptonote_ws_proxy.proxy.session import SessionState
from cryptonote_ws_proxy.proxy.translator import split_login
from cryptonote_ws_proxy.stratum.messages import StratumErrors, StratumNotification, StratumRequest

from conftest import WALLET, client_payloads, of_type, statuses, upstream_payloads

JOB = {"job_id": "j1", "blob": "ab01", "target": "ffff0000", "height": 100}


def client(session, msg_id, method, params):
    return session.handle(ClientMessageReceived(StratumRequest(msg_id, method, params)))


def pool_response(session, msg_id, result=None, error=None):
    return session.handle(UpstreamMessageReceived(CryptoNoteResponse(msg_id, result, error)))


def pool_job(session, params):
    return session.handle(UpstreamMessageReceived(CryptoNoteNotification("job", params)))


def subscribe(session, msg_id=1, login=f"{WALLET}.rig1"):
    return client(session, msg_id, "mining.subscribe", [login])


def submit(session, msg_id, job_id="j1", nonce="0000abcd", result="ff" * 32):
    return client(session, msg_id, "mining.submit", ["rig1", job_id, nonce, result])


@pytest.fixture
def logged_in_session(connected_session):
    """A session logged in with pool session id ``sess123``."""
    subscribe(connected_session)
    pool_response(connected_session, 1, {"id": "sess123", "status": "OK"})
    assert connected_session.logged_in
    return connected_session


class TestLogin:
    """Test the subscribe/login exchange."""

    def test_subscribe_login_round_trip(self, make_session):
        """A subscribe becomes a login and the pool's answer becomes the subscribe result."""
        session = make_session(
            session_settings=SessionConfig(send_rigid=False, reconnect=ReconnectConfig(max_attempts=3))
        )
        effects = session.handle(SessionStarted())
        assert statuses(effects) == ["initializing", "connecting"]
        assert of_type(effects, OpenUpstream)
        assert session.state is SessionState.CONNECTING

        effects = session.handle(UpstreamConnected())
        assert session.state is SessionState.CONNECTED
        assert of_type(effects, StartKeepalive)

        effects = subscribe(session, msg_id=1)
        assert upstream_payloads(effects) == [
            {
                "id": 1,
                "method": "login",
                "params": {"login": WALLET, "pass": "rig1", "agent": "test-agent/1.0"},
            }
        ]
        assert session.state is SessionState.LOGGING_IN

        effects = pool_response(session, 1, {"id": "sess123"})
        assert client_payloads(effects) == [
            {"id": 1, "result": [[["mining.notify", "sess123"]], "sess123", 4], "error": None}
        ]
        assert session.state is SessionState.LOGGED_IN
        assert session.login_id == "sess123"

    def test_rigid_is_sent_by_default(self, connected_session):
        (payload,) = upstream_payloads(subscribe(connected_session))
        assert payload["params"]["rigid"] == "rig1"

    def test_default_worker(self, connected_session):
        """A login without a worker suffix uses the default worker name."""
        (payload,) = upstream_payloads(subscribe(connected_session, login=WALLET))
        assert payload["params"]["login"] == WALLET
        assert payload["params"]["pass"] == "web"

    def test_login_with_embedded_job(self, connected_session):
        """The subscribe result comes first, then the embedded job as a notify."""
        subscribe(connected_session)
        effects = pool_response(connected_session, 1, {"id": "sess123", "job": JOB, "status": "OK"})
        payloads = client_payloads(effects)
        assert payloads[0]["id"] == 1
        assert payloads[1]["method"] == "mining.notify"
        assert payloads[1]["params"][0] == "j1"
        assert connected_session.job.job_id == "j1"

    def test_missing_wallet(self, connected_session):
        effects = client(connected_session, 1, "mining.subscribe", [])
        assert client_payloads(effects) == [
            {"id": 1, "result": None, "error": {"code": -1, "message": StratumErrors.MISSING_WALLET}}
        ]
        assert not upstream_payloads(effects)

    def test_login_error(self, connected_session):
        """A pool error is echoed with the pool's message and the session enters error."""
        subscribe(connected_session)
        effects = pool_response(connected_session, 1, None, {"code": -1, "message": "Invalid address"})
        assert client_payloads(effects) == [
            {"id": 1, "result": None, "error": {"code": -1, "message": "Invalid address"}}
        ]
        assert connected_session.state is SessionState.ERROR
        assert connected_session.login_id is None

    def test_login_without_session_id(self, connected_session):
        subscribe(connected_session)
        effects = pool_response(connected_session, 1, {"status": "OK"})
        (payload,) = client_payloads(effects)
        assert payload["error"]["message"] == StratumErrors.LOGIN_NO_SESSION
        assert connected_session.state is SessionState.ERROR

    def test_subscribe_before_connect_is_queued(self, make_session):
        """Messages sent while the pool is still connecting are flushed once it opens."""
        session = make_session()
        session.handle(SessionStarted())
        effects = subscribe(session)
        assert statuses(effects) == ["queued"]
        assert not upstream_payloads(effects)
        assert len(session.queue) == 1

        effects = session.handle(UpstreamConnected())
        assert [p["method"] for p in upstream_payloads(effects)] == ["login"]
        assert session.queue == []
        assert session.state is SessionState.LOGGING_IN

    def test_authorize_is_answered_locally(self, connected_session):
        effects = client(connected_session, 2, "mining.authorize", ["user", "x"])
        assert client_payloads(effects) == [{"id": 2, "result": True, "error": None}]
        assert not upstream_payloads(effects)

    def test_split_login(self):
        assert split_login("wallet.rig.1", "web") == ("wallet", "rig.1")
        assert split_login("wallet", "web") == ("wallet", "web")
        assert split_login("wallet.", "web") == ("wallet", "web")


class TestJobs:
    """Test job notifications."""

    def test_job_notification(self, logged_in_session, clock):
        effects = pool_job(logged_in_session, {"job_id": "j1", "blob": "ab..", "target": "ffff0000"})
        assert client_payloads(effects) == [
            {
                "id": None,
                "method": "mining.notify",
                "params": [
                    "j1",
                    "ab..",
                    "",
                    "",
                    [],
                    "panthera",
                    "ffff0000",
                    format(int(clock.now), "x"),
                    True,
                ],
            }
        ]
        assert logged_in_session.difficulty > 1

    def test_job_algorithm_from_pool(self, logged_in_session):
        (payload,) = client_payloads(pool_job(logged_in_session, dict(JOB, algo="rx/0")))
        assert payload["params"][5] == "rx/0"

    def test_job_without_id_is_ignored(self, logged_in_session):
        assert pool_job(logged_in_session, {"blob": "ab"}) == []

    def test_invalid_target_is_forwarded_by_default(self, logged_in_session):
        """Without strict targets a bad target only loses the difficulty estimate."""
        (payload,) = client_payloads(pool_job(logged_in_session, dict(JOB, target="zz")))
        assert payload["params"][6] == "zz"
        assert logged_in_session.difficulty == 1

    def test_invalid_target_is_dropped_when_strict(self, make_session):
        session = make_session(
            session_settings=SessionConfig(strict_targets=True, reconnect=ReconnectConfig())
        )
        session.handle(SessionStarted())
        session.handle(UpstreamConnected())
        subscribe(session)
        pool_response(session, 1, {"id": "sess123"})

        effects = pool_job(session, dict(JOB, target="zz"))
        assert client_payloads(effects) == []
        assert statuses(effects) == ["error"]
        assert session.job is None

    def test_client_getjob(self, logged_in_session):
        effects = client(logged_in_session, 5, "mining.get_job", [])
        assert upstream_payloads(effects) == [{"id": 2, "method": "getjob", "params": {"id": "sess123"}}]

        effects = pool_response(logged_in_session, 2, JOB)
        (payload,) = client_payloads(effects)
        assert payload["method"] == "mining.notify"

    def test_getjob_alias_without_job(self, logged_in_session):
        """A getjob answered without a job echoes the pool's result."""
        client(logged_in_session, "g", "getjob", [])
        effects = pool_response(logged_in_session, 2, {"status": "OK"})
        assert client_payloads(effects) == [{"id": "g", "result": {"status": "OK"}, "error": None}]

    def test_getjob_before_login(self, connected_session):
        effects = client(connected_session, 5, "getjob", [])
        (payload,) = client_payloads(effects)
        assert payload["error"]["message"] == StratumErrors.NOT_LOGGED_IN


class TestShares:
    """Test share submission and response correlation."""

    def test_submit_before_login(self, connected_session):
        effects = submit(connected_session, 3)
        assert client_payloads(effects) == [
            {"id": 3, "result": None, "error": {"code": -1, "message": StratumErrors.NOT_LOGGED_IN}}
        ]
        assert not upstream_payloads(effects)

    def test_submit_wrong_arity(self, logged_in_session):
        effects = client(logged_in_session, 3, "mining.submit", ["rig1", "j1"])
        (payload,) = client_payloads(effects)
        assert payload["error"]["message"] == StratumErrors.INVALID_SUBMIT

    def test_submit_empty_fields(self, logged_in_session):
        effects = submit(logged_in_session, 3, nonce="")
        (payload,) = client_payloads(effects)
        assert payload["error"]["message"] == StratumErrors.MISSING_SUBMIT
        assert logged_in_session.submitted == 0

    def test_submit_translation(self, logged_in_session):
        effects = submit(logged_in_session, 7)
        assert upstream_payloads(effects) == [
            {
                "id": 2,
                "method": "submit",
                "params": {"id": "sess123", "job_id": "j1", "nonce": "0000abcd", "result": "ff" * 32},
            }
        ]

    def test_out_of_order_responses(self, logged_in_session):
        """Each response is routed to the client request it answers, whatever the order."""
        submit(logged_in_session, 10)
        submit(logged_in_session, 11)

        effects = pool_response(logged_in_session, 3, {"status": "OK"})
        assert client_payloads(effects) == [{"id": 11, "result": True, "error": None}]

        effects = pool_response(logged_in_session, 2, None, {"code": -1, "message": "Low difficulty share"})
        assert client_payloads(effects) == [
            {"id": 10, "result": False, "error": {"code": -1, "message": "Low difficulty share"}}
        ]
        assert (logged_in_session.submitted, logged_in_session.accepted, logged_in_session.rejected) == (2, 1, 1)
        assert logged_in_session.pending == {}

    def test_duplicate_response_is_not_rerouted(self, logged_in_session):
        """A correlation entry is consumed by the first response."""
        submit(logged_in_session, 10)
        pool_response(logged_in_session, 2, {"status": "OK"})
        effects = pool_response(logged_in_session, 2, {"status": "OK"})
        assert effects == []
        assert logged_in_session.accepted == 1

    def test_request_ids_are_monotonic(self, logged_in_session):
        ids = [upstream_payloads(submit(logged_in_session, n))[0]["id"] for n in range(5)]
        assert ids == [2, 3, 4, 5, 6]


class TestPassthrough:
    """Test forwarding of methods the proxy does not translate."""

    def test_unknown_method_id_remap(self, connected_session):
        effects = client(connected_session, "abc", "custom.method", [1])
        assert upstream_payloads(effects) == [{"id": 1, "method": "custom.method", "params": [1]}]

        effects = pool_response(connected_session, 1, {"x": 1})
        assert client_payloads(effects) == [{"id": "abc", "result": {"x": 1}, "error": None}]

    def test_unknown_notification(self, connected_session):
        message = StratumNotification("mining.extranonce.subscribe", [])
        effects = connected_session.handle(ClientMessageReceived(message))
        (payload,) = upstream_payloads(effects)
        assert payload["method"] == "mining.extranonce.subscribe"

    def test_unmatched_pool_error(self, logged_in_session):
        effects = pool_response(logged_in_session, 99, None, {"code": -5, "message": "boom"})
        assert client_payloads(effects) == [
            {"id": None, "result": None, "error": {"code": -5, "message": "boom"}}
        ]

    def test_other_pool_notification_is_forwarded(self, logged_in_session):
        message = CryptoNoteNotification("motd", {"text": "hello"})
        effects = logged_in_session.handle(UpstreamMessageReceived(message))
        assert client_payloads(effects) == [message.to_dict()]

    def test_protocol_error_reply(self, connected_session):
        effects = connected_session.handle(ClientProtocolError("Invalid JSON"))
        (payload,) = client_payloads(effects)
        assert payload["id"] is None
        assert "Invalid JSON" in payload["error"]["message"]


class TestReconnection:
    """Test upstream loss, queueing and reconnection."""

    def test_pool_loss_schedules_reconnect(self, logged_in_session):
        effects = logged_in_session.handle(UpstreamClosed())
        assert of_type(effects, StopKeepalive)
        assert statuses(effects) == ["disconnected"]
        assert of_type(effects, ScheduleReconnect) == [ScheduleReconnect(delay=5.0, attempt=1)]
        assert logged_in_session.state is SessionState.DISCONNECTED
        assert logged_in_session.login_id is None

    def test_in_flight_requests_are_failed(self, logged_in_session):
        submit(logged_in_session, 30)
        effects = logged_in_session.handle(UpstreamClosed())
        assert {"id": 30, "result": None, "error": {"code": -1, "message": "Pool connection lost"}} in (
            client_payloads(effects)
        )
        assert logged_in_session.pending == {}

    def test_outage_queue_flush_then_relogin(self, logged_in_session):
        """Shares sent during an outage reach the new connection before the re-login."""
        logged_in_session.handle(UpstreamClosed())

        effects = submit(logged_in_session, 20)
        assert statuses(effects) == ["queued"]
        assert not upstream_payloads(effects)

        effects = logged_in_session.handle(ReconnectDue())
        assert of_type(effects, OpenUpstream)

        effects = logged_in_session.handle(UpstreamConnected())
        sent = upstream_payloads(effects)
        assert [p["method"] for p in sent] == ["submit", "login"]
        assert sent[0]["params"]["id"] == "sess123"
        assert sent[1]["params"]["login"] == WALLET
        assert logged_in_session.state is SessionState.LOGGING_IN

        effects = pool_response(logged_in_session, sent[1]["id"], {"id": "sess456"})
        assert statuses(effects) == ["logged_in"]
        assert client_payloads(effects) == []
        assert logged_in_session.login_id == "sess456"

        effects = pool_response(logged_in_session, sent[0]["id"], {"status": "OK"})
        assert client_payloads(effects) == [{"id": 20, "result": True, "error": None}]

    def test_relogin_can_be_disabled(self, make_session):
        session = make_session(
            session_settings=SessionConfig(relogin_on_reconnect=False, reconnect=ReconnectConfig())
        )
        session.handle(SessionStarted())
        session.handle(UpstreamConnected())
        subscribe(session)
        pool_response(session, 1, {"id": "sess123"})
        session.handle(UpstreamClosed())
        session.handle(ReconnectDue())
        effects = session.handle(UpstreamConnected())
        assert upstream_payloads(effects) == []

    def test_max_attempts_closes_session(self, make_session):
        session = make_session()
        session.handle(SessionStarted())
        attempts = []
        for _ in range(3):
            effects = session.handle(UpstreamConnectFailed("Connection refused"))
            attempts.extend(e.attempt for e in of_type(effects, ScheduleReconnect))
            session.handle(ReconnectDue())
        assert attempts == [1, 2, 3]

        effects = session.handle(UpstreamConnectFailed("Connection refused"))
        assert of_type(effects, CloseSession) == [CloseSession(reason=REASON_MAX_RECONNECTS, code=1000)]
        assert session.closed

    def test_successful_connect_resets_attempts(self, make_session):
        session = make_session()
        session.handle(SessionStarted())
        session.handle(UpstreamConnectFailed("Connection refused"))
        session.handle(ReconnectDue())
        session.handle(UpstreamConnected())
        assert session.reconnect.attempts == 0

    def test_pool_loss_after_client_left_closes(self, connected_session):
        connected_session.client_open = False
        effects = connected_session.handle(UpstreamClosed())
        assert of_type(effects, CloseSession)
        assert not of_type(effects, ScheduleReconnect)

    def test_idle_pool_before_login_is_dropped(self, connected_session):
        effects = connected_session.handle(UpstreamIdleTimeout())
        assert of_type(effects, CloseUpstream)
        assert of_type(effects, ScheduleReconnect)

    def test_idle_pool_after_login_is_kept(self, logged_in_session):
        assert logged_in_session.handle(UpstreamIdleTimeout()) == []


class TestTimers:
    """Test keepalive and heartbeat handling."""

    def test_keepalive_getjob(self, logged_in_session):
        effects = logged_in_session.handle(KeepaliveDue())
        assert upstream_payloads(effects) == [{"id": 2, "method": "getjob", "params": {"id": "sess123"}}]
        # The pool's bare acknowledgement is not forwarded
        assert pool_response(logged_in_session, 2, {"status": "OK"}) == []

    def test_keepalive_before_login(self, connected_session):
        assert connected_session.handle(KeepaliveDue()) == []

    def test_heartbeat_pings_client(self, connected_session, clock):
        effects = connected_session.handle(HeartbeatTick(clock()))
        assert of_type(effects, PingClient)

    def test_stale_session_is_closed(self, connected_session, clock, settings):
        clock.advance(settings.stale_timeout + 1)
        effects = connected_session.handle(HeartbeatTick(clock()))
        assert of_type(effects, CloseSession)[0].reason == REASON_INACTIVE
        assert connected_session.closed

    def test_pong_counts_as_activity(self, connected_session, clock, settings):
        clock.advance(settings.stale_timeout - 10)
        connected_session.handle(ClientPong())
        clock.advance(20)
        effects = connected_session.handle(HeartbeatTick(clock()))
        assert not of_type(effects, CloseSession)

    def test_stuck_connected_is_recovered(self, connected_session, clock, settings):
        clock.advance(settings.login_grace_period + 1)
        effects = connected_session.handle(HeartbeatTick(clock()))
        assert of_type(effects, CloseUpstream)
        assert of_type(effects, ScheduleReconnect)
        assert connected_session.state is SessionState.DISCONNECTED

    def test_pending_requests_expire(self, logged_in_session, clock, settings):
        submit(logged_in_session, 40)
        clock.advance(settings.pending_request_ttl + 1)
        effects = logged_in_session.handle(HeartbeatTick(clock()))
        assert {"id": 40, "result": None, "error": {"code": -1, "message": "Pool did not respond"}} in (
            client_payloads(effects)
        )
        assert logged_in_session.pending == {}

    def test_late_response_after_expiry_is_not_credited(self, logged_in_session, clock, settings):
        """A reply for an expired request never lands on a newer client request with the same id."""
        submit(logged_in_session, 7)
        clock.advance(settings.pending_request_ttl + 1)
        logged_in_session.handle(HeartbeatTick(clock()))

        effects = client(logged_in_session, 2, "mining.get_job", [])
        (payload,) = upstream_payloads(effects)
        assert payload["id"] == 3

        effects = pool_response(logged_in_session, 2, None, {"code": -1, "message": "late"})
        assert client_payloads(effects) == [{"id": None, "result": None, "error": {"code": -1, "message": "late"}}]

        effects = pool_response(logged_in_session, 2, {"status": "OK"})
        assert effects == []
        assert 3 in logged_in_session.pending


class TestClose:
    """Test session teardown."""

    def test_close_is_idempotent(self, connected_session):
        effects = connected_session.close("bye")
        assert of_type(effects, CancelReconnect)
        assert of_type(effects, CloseUpstream)
        assert of_type(effects, CloseSession)
        assert connected_session.close("bye") == []

    def test_events_after_close_are_ignored(self, logged_in_session):
        logged_in_session.handle(CloseRequested("shutdown", 1001))
        assert logged_in_session.handle(UpstreamClosed()) == []
        assert submit(logged_in_session, 1) == []

    def test_client_closed(self, logged_in_session):
        effects = logged_in_session.handle(ClientClosed())
        assert of_type(effects, CloseSession)
        assert not logged_in_session.client_open
        assert logged_in_session.pending == {}
        assert logged_in_session.queue == []

    def test_snapshot(self, logged_in_session):
        submit(logged_in_session, 1)
        snapshot = logged_in_session.snapshot()
        assert snapshot["state"] == "logged_in"
        assert snapshot["submitted"] == 1
