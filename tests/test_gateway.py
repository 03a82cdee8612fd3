from __future__ import annotations

import json
import shlex
import sys
from pathlib import Path

import allure
import pytest

from subagent_orchestrator.config import GatewaySettings
from subagent_orchestrator.orchestrator.gateway import (
    CommandSessionGateway,
    GatewayCapabilities,
    GatewayError,
    NullSessionGateway,
    SpawnRequest,
    build_command_args,
    build_gateway,
    parse_history_output,
)

pytestmark = [
    allure.epic("Sessions"),
    allure.feature("Session Gateway"),
]

PYTHON = shlex.quote(sys.executable)


def _script(tmp_path: Path, name: str, body: str) -> str:
    path = tmp_path / name
    path.write_text(body, "utf-8")
    return f"{PYTHON} {shlex.quote(str(path))}"


def test_placeholders_are_shell_quoted() -> None:
    argv = build_command_args(
        "host send --session {session_id} --text {message}",
        {"session_id": "s-1", "message": "hello; rm -rf / {literal} 'quoted'"},
    )

    assert argv == [
        "host",
        "send",
        "--session",
        "s-1",
        "--text",
        "hello; rm -rf / {literal} 'quoted'",
    ]


@pytest.mark.parametrize("template", ["host {unknown}", "host {0}", "   "])
def test_bad_templates_are_rejected(template: str) -> None:
    with pytest.raises(GatewayError):
        build_command_args(template, {})


def test_parse_history_accepts_list_or_messages_object() -> None:
    as_list = parse_history_output(
        json.dumps([{"role": "user", "content": "hi", "timestamp": 1}]),
    )
    as_object = parse_history_output(
        json.dumps({"messages": [{"role": "tool", "content": {"ok": True}}, "junk"]}),
    )

    assert as_list[0].role == "user"
    assert as_list[0].timestamp == "1"
    assert len(as_object) == 1
    assert as_object[0].timestamp is None
    assert json.loads(as_object[0].content) == {"ok": True}
    assert parse_history_output("") == []
    with pytest.raises(GatewayError):
        parse_history_output("not json")
    with pytest.raises(GatewayError):
        parse_history_output(json.dumps("text"))


def test_null_gateway_has_no_capabilities() -> None:
    gateway = NullSessionGateway()

    assert gateway.capabilities == GatewayCapabilities()
    with pytest.raises(GatewayError):
        gateway.kill("s1")


def test_build_gateway_picks_command_gateway_when_configured() -> None:
    assert isinstance(build_gateway(GatewaySettings()), NullSessionGateway)

    gateway = build_gateway(GatewaySettings(kill_command="host kill {session_id}"))

    assert isinstance(gateway, CommandSessionGateway)
    assert gateway.capabilities == GatewayCapabilities(kill=True)


def test_spawn_returns_last_stdout_line(tmp_path: Path) -> None:
    command = _script(
        tmp_path,
        "spawn.py",
        "import json, sys\n"
        "payload = json.load(open(sys.argv[1], encoding='utf-8'))\n"
        "print('starting')\n"
        "print('session-' + payload['sub_task_id'] + '-' + sys.argv[2])\n",
    )
    gateway = CommandSessionGateway(
        GatewaySettings(spawn_command=f"{command} {{payload_file}} {{model}}"),
    )

    session_id = gateway.spawn(
        SpawnRequest(sub_task_id="sub-1", main_task_id="task-1", task="do it", model="m1"),
    )

    assert session_id == "session-sub-1-m1"


def test_send_and_history_round_trip_through_commands(tmp_path: Path) -> None:
    sink = tmp_path / "sent.txt"
    send = _script(
        tmp_path,
        "send.py",
        "import sys\n"
        f"open({str(sink)!r}, 'w', encoding='utf-8').write(sys.argv[1] + '|' + sys.argv[2])\n",
    )
    history = _script(
        tmp_path,
        "history.py",
        "import json, sys\n"
        "print(json.dumps({'messages': [{'role': 'assistant', 'content': sys.argv[1:]}]}))\n",
    )
    gateway = CommandSessionGateway(
        GatewaySettings(
            send_command=f"{send} {{session_id}} {{message}}",
            history_command=f"{history} {{session_id}} {{limit}} {{include_tools}}",
        ),
    )

    gateway.send("s1", "please 'stop' now")
    messages = gateway.history("s1", include_tools=True, limit=7)

    assert sink.read_text("utf-8") == "s1|please 'stop' now"
    assert json.loads(messages[0].content) == ["s1", "7", "true"]


def test_failures_become_gateway_errors(tmp_path: Path) -> None:
    failing = _script(
        tmp_path,
        "fail.py",
        "import sys\nsys.stderr.write('nope')\nsys.exit(3)\n",
    )
    slow = _script(tmp_path, "slow.py", "import time\ntime.sleep(5)\n")
    silent = _script(tmp_path, "silent.py", "pass\n")

    with pytest.raises(GatewayError, match="exited with 3: nope"):
        CommandSessionGateway(GatewaySettings(kill_command=failing)).kill("s1")
    with pytest.raises(GatewayError, match="timed out"):
        CommandSessionGateway(
            GatewaySettings(kill_command=slow, command_timeout_seconds=0.2),
        ).kill("s1")
    with pytest.raises(GatewayError, match="not found"):
        CommandSessionGateway(
            GatewaySettings(kill_command=str(tmp_path / "missing-binary")),
        ).kill("s1")
    with pytest.raises(GatewayError, match="no session id"):
        CommandSessionGateway(GatewaySettings(spawn_command=silent)).spawn(
            SpawnRequest(sub_task_id="sub-1", main_task_id="task-1", task="t", model="m"),
        )
    with pytest.raises(GatewayError, match="not available"):
        CommandSessionGateway(GatewaySettings()).send("s1", "hi")
