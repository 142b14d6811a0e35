"""
Unit tests for the TerminalManager facade.
"""

import threading

import pytest

from remote_terminal.errors import CreationError, TeardownError, TransportError, UsageError
from remote_terminal.manager import EVENT_CLOSED, EVENT_CREATED, EVENT_UPDATED, TerminalManager
from remote_terminal.models import LINE_COMMAND, LINE_ERROR, LINE_OUTPUT
from remote_terminal.service import ExecResult


def history(session):
    return [(line.type, line.content) for line in session.history]


class TestCreateTerminal:
    def test_create_registers_session_with_empty_transcript(self, manager, service):
        session = manager.create_terminal("/srv/app", name="api")
        assert session.id in service.sessions
        assert session.path == "/srv/app"
        assert session.name == "api"
        assert session.history == []
        assert session.last_processed_length == 0
        assert manager.list_terminals() == [session]
        assert manager.get_terminal(session.id) is session

    def test_create_starts_poller(self, manager):
        session = manager.create_terminal("/srv/app")
        poller = manager.registry.poller(session.id)
        assert poller is not None
        assert not poller.stopped

    def test_create_failure_leaves_registry_unchanged(self, manager, service):
        manager.create_terminal("/srv/app")
        service.fail_create = True
        with pytest.raises(CreationError) as excinfo:
            manager.create_terminal("/srv/other")
        assert "host unreachable" in str(excinfo.value)
        assert len(manager.list_terminals()) == 1

    def test_terminals_for_path(self, manager):
        a = manager.create_terminal("/srv/app")
        manager.create_terminal("/var/log")
        c = manager.create_terminal("/srv/app")
        assert manager.get_terminals_for_path("/srv/app") == [a, c]


class TestExecuteCommand:
    def test_command_is_recorded_before_output(self, manager, service):
        session = manager.create_terminal("/srv/app")
        manager.execute_command(session.id, "ls -la")
        assert history(session) == [(LINE_COMMAND, "ls -la")]
        assert service.sent == [(session.id, "ls -la")]

        service.emit(session.id, "ls -la\nfile1\nfile2\n")
        assert manager.poll_once(session.id) is True
        assert history(session) == [
            (LINE_COMMAND, "ls -la"),
            (LINE_OUTPUT, "file1"),
            (LINE_OUTPUT, "file2"),
        ]

    def test_unknown_id_raises_and_mutates_nothing(self, manager, service):
        session = manager.create_terminal("/srv/app")
        manager.execute_command(session.id, "pwd")
        before = history(session)
        with pytest.raises(UsageError):
            manager.execute_command("missing", "rm -rf /tmp/x")
        assert history(session) == before
        assert service.sent == [(session.id, "pwd")]

    def test_execution_failure_is_recorded_in_transcript(self, manager, service):
        session = manager.create_terminal("/srv/app")
        service.fail_execute = "Session is DEAD: transport disconnected"
        manager.execute_command(session.id, "uptime")
        assert history(session) == [
            (LINE_COMMAND, "uptime"),
            (LINE_ERROR, "Error: Session is DEAD: transport disconnected"),
        ]

    def test_completed_result_is_recorded(self, manager, service):
        session = manager.create_terminal("/srv/app")
        service.exec_result = ExecResult(stdout="total 0\n", stderr="", exit_status=0)
        manager.execute_command(session.id, "ls")
        assert history(session) == [(LINE_COMMAND, "ls"), (LINE_OUTPUT, "total 0\n")]

    def test_completed_result_with_stderr(self, manager, service):
        session = manager.create_terminal("/srv/app")
        service.exec_result = ExecResult(stdout="", stderr="cat: x: No such file\n", exit_status=1)
        manager.execute_command(session.id, "cat x")
        assert history(session) == [(LINE_COMMAND, "cat x"), (LINE_ERROR, "cat: x: No such file\n")]

    def test_nonzero_exit_without_stderr(self, manager, service):
        session = manager.create_terminal("/srv/app")
        service.exec_result = ExecResult(stdout="  ", stderr="", exit_status=2)
        manager.execute_command(session.id, "false")
        assert history(session) == [(LINE_COMMAND, "false"), (LINE_ERROR, "Command exited with status 2")]


class TestPolling:
    def test_fetch_failure_is_swallowed(self, manager, service):
        session = manager.create_terminal("/srv/app")
        service.fail_fetch = True
        assert manager.poll_once(session.id) is True
        assert session.history == []

        service.fail_fetch = False
        service.emit(session.id, "motd\n")
        assert manager.poll_once(session.id) is True
        assert history(session) == [(LINE_OUTPUT, "motd")]

    def test_repeated_poll_without_growth_is_idempotent(self, manager, service):
        session = manager.create_terminal("/srv/app")
        service.emit(session.id, "ready\n")
        manager.poll_once(session.id)
        manager.poll_once(session.id)
        assert history(session) == [(LINE_OUTPUT, "ready")]

    def test_poll_for_unknown_session_stops(self, manager):
        assert manager.poll_once("gone") is False

    def test_failure_in_one_session_does_not_touch_another(self, manager, service):
        a = manager.create_terminal("/srv/a")
        b = manager.create_terminal("/srv/b")
        service.emit(b.id, "hello\n")
        del service.content[a.id]
        assert manager.poll_once(a.id) is True
        assert manager.poll_once(b.id) is True
        assert history(b) == [(LINE_OUTPUT, "hello")]

    def test_command_sent_during_fetch_lands_after_fetched_output(self, manager, service):
        session = manager.create_terminal("/srv/app")
        service.emit(session.id, "banner\n")
        manager.poll_once(session.id)
        service.emit(session.id, "late output\n")

        entered = threading.Event()
        release = threading.Event()
        original_fetch = service.get_session_content

        def slow_fetch(key, session_id):
            content = original_fetch(key, session_id)
            entered.set()
            release.wait(5)
            return content

        service.get_session_content = slow_fetch
        poll_thread = threading.Thread(target=manager.poll_once, args=(session.id,))
        poll_thread.start()
        assert entered.wait(5)

        exec_thread = threading.Thread(target=manager.execute_command, args=(session.id, "ls"))
        exec_thread.start()
        exec_thread.join(timeout=0.2)
        release.set()
        poll_thread.join(timeout=5)
        exec_thread.join(timeout=5)
        service.get_session_content = original_fetch

        service.emit(session.id, "ls\nfile1\n")
        manager.poll_once(session.id)
        assert history(session) == [
            (LINE_OUTPUT, "banner"),
            (LINE_OUTPUT, "late output"),
            (LINE_COMMAND, "ls"),
            (LINE_OUTPUT, "file1"),
        ]


class TestWorkingDirectory:
    def test_pwd_comes_from_service(self, manager, service):
        session = manager.create_terminal("/srv/app")
        service.cwd[session.id] = "/srv/app/releases"
        assert manager.get_terminal_pwd(session.id) == "/srv/app/releases"
        assert session.path == "/srv/app"

    def test_pwd_unknown_id(self, manager):
        with pytest.raises(UsageError):
            manager.get_terminal_pwd("missing")

    def test_pwd_failure_propagates(self, manager, service):
        session = manager.create_terminal("/srv/app")
        service.fail_pwd = "Command failed: permission denied"
        with pytest.raises(TransportError, match="permission denied"):
            manager.get_terminal_pwd(session.id)


class TestCloseTerminal:
    def test_close_removes_session_and_cancels_poller(self, manager, service):
        session = manager.create_terminal("/srv/app")
        poller = manager.registry.poller(session.id)
        manager.close_terminal(session.id)
        assert manager.list_terminals() == []
        assert service.closed == [session.id]
        assert poller.stopped

    def test_close_unknown_is_noop(self, manager, service):
        manager.close_terminal("never-existed")
        assert service.closed == []

    def test_poll_completing_after_close_is_discarded(self, manager, service):
        session = manager.create_terminal("/srv/app")
        original_fetch = service.get_session_content

        def fetch_then_close(key, session_id):
            content = "late output\n"
            manager.close_terminal(session_id)
            return content

        service.get_session_content = fetch_then_close
        assert manager.poll_once(session.id) is False
        assert session.history == []
        service.get_session_content = original_fetch
        assert manager.list_terminals() == []

    def test_teardown_failure_still_removes_locally(self, manager, service):
        session = manager.create_terminal("/srv/app")
        service.fail_close = True
        with pytest.raises(TeardownError):
            manager.close_terminal(session.id)
        assert manager.get_terminal(session.id) is None
        assert manager.list_terminals() == []

    def test_close_all_continues_past_teardown_failures(self, manager, service):
        manager.create_terminal("/srv/a")
        manager.create_terminal("/srv/b")
        service.fail_close = True
        manager.close_all()
        assert manager.list_terminals() == []
        assert len(service.closed) == 2


class TestLoadTerminals:
    def test_adopts_only_unknown_sessions(self, manager, service):
        known = manager.create_terminal("/srv/app")
        remote_id = service.add_remote("/var/log", name="logs", content="tail\nline 1\nline 2\n")

        adopted = manager.load_terminals()
        assert [session.id for session in adopted] == [remote_id]
        assert len(manager.list_terminals()) == 2
        assert manager.get_terminal(known.id) is known

        restored = manager.get_terminal(remote_id)
        assert restored.name == "logs"
        assert restored.path == "/var/log"
        assert history(restored) == [(LINE_OUTPUT, "tail"), (LINE_OUTPUT, "line 1"), (LINE_OUTPUT, "line 2")]
        assert restored.last_processed_length == len("tail\nline 1\nline 2\n")
        assert manager.registry.poller(remote_id) is not None

    def test_second_load_adds_nothing(self, manager, service):
        service.add_remote("/var/log")
        assert len(manager.load_terminals()) == 1
        assert manager.load_terminals() == []
        assert len(manager.list_terminals()) == 1

    def test_listing_failure_yields_nothing(self, manager, service):
        service.add_remote("/var/log")
        service.fail_list = True
        assert manager.load_terminals() == []
        assert manager.list_terminals() == []

    def test_backfill_failure_keeps_adopted_session(self, manager, service):
        remote_id = service.add_remote("/var/log", content="boot\n")
        service.fail_fetch = True
        adopted = manager.load_terminals()
        assert [session.id for session in adopted] == [remote_id]
        assert adopted[0].history == []


class TestProjectContext:
    def test_clear_all_drops_sessions_without_remote_close(self, manager, service):
        session = manager.create_terminal("/srv/app")
        poller = manager.registry.poller(session.id)
        manager.clear_all()
        assert manager.list_terminals() == []
        assert service.closed == []
        assert poller.stopped

    def test_switching_project_key_clears_sessions(self, manager):
        manager.create_terminal("/srv/app")
        manager.set_project_key("other")
        assert manager.project_key == "other"
        assert manager.list_terminals() == []

    def test_same_project_key_keeps_sessions(self, manager):
        manager.create_terminal("/srv/app")
        manager.set_project_key("proj")
        assert len(manager.list_terminals()) == 1


class TestTranscriptAndListeners:
    def test_get_transcript_since(self, manager, service):
        session = manager.create_terminal("/srv/app")
        manager.execute_command(session.id, "whoami")
        service.emit(session.id, "whoami\ndeploy\n")
        manager.poll_once(session.id)
        lines = manager.get_transcript(session.id, since=1)
        assert [(line["type"], line["content"]) for line in lines] == [(LINE_OUTPUT, "deploy")]
        assert isinstance(lines[0]["timestamp"], int)

    def test_get_transcript_unknown_raises(self, manager):
        with pytest.raises(UsageError):
            manager.get_transcript("missing")

    def test_listeners_receive_lifecycle_events(self, manager, service):
        events = []
        manager.subscribe(lambda event, session_id: events.append((event, session_id)))
        session = manager.create_terminal("/srv/app")
        manager.execute_command(session.id, "ls")
        service.emit(session.id, "ls\na.txt\n")
        manager.poll_once(session.id)
        manager.poll_once(session.id)
        manager.close_terminal(session.id)
        assert events == [
            (EVENT_CREATED, session.id),
            (EVENT_UPDATED, session.id),
            (EVENT_UPDATED, session.id),
            (EVENT_CLOSED, session.id),
        ]

    def test_raising_listener_does_not_break_others(self, manager):
        seen = []

        def broken(event, session_id):
            raise RuntimeError("listener bug")

        manager.subscribe(broken)
        manager.subscribe(lambda event, session_id: seen.append(event))
        manager.create_terminal("/srv/app")
        assert seen == [EVENT_CREATED]

    def test_unsubscribe(self, manager):
        seen = []
        listener = lambda event, session_id: seen.append(event)
        manager.subscribe(listener)
        manager.unsubscribe(listener)
        manager.create_terminal("/srv/app")
        assert seen == []


def test_post_command_poll_runs_without_waiting_for_interval(service):
    manager = TerminalManager(service, project_key="proj", poll_interval=3600, echo_poll_delay=0.01)
    try:
        session = manager.create_terminal("/srv/app")
        service.emit(session.id, "ls\nREADME.md\n")
        manager.execute_command(session.id, "ls")
        poller = manager.registry.poller(session.id)
        poller._timer.join(timeout=5)
        assert history(session) == [(LINE_COMMAND, "ls"), (LINE_OUTPUT, "README.md")]
    finally:
        manager.clear_all()
