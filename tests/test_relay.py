"""Tests for the stdio relay."""

import asyncio
import json

import httpx
import pytest

from idelink.discovery.resolver import InstanceResolver, Selector
from idelink.host.server import HostRuntime, create_app
from idelink.host.tools import ToolDefinition
from idelink.relay.protocol import ErrorCode
from idelink.relay.server import RelayServer, build_relay
from idelink.relay.state import RelaySession
from idelink.relay.transport import HostTransport


def message(method, id=1, params=None):
    data = {"jsonrpc": "2.0", "method": method}
    if id is not None:
        data["id"] = id
    if params is not None:
        data["params"] = params
    return json.dumps(data)


def call_tool(name="build", id=1):
    return message("tools/call", id=id, params={"name": name, "arguments": {}})


def tool_text(response):
    return response["result"]["content"][0]["text"]


class FakeWriter:
    """Collects what the relay writes to stdout."""

    def __init__(self):
        self.data = bytearray()

    def write(self, data: bytes):
        self.data += data

    async def drain(self):
        pass

    @property
    def lines(self):
        return self.data.decode("utf-8").splitlines()


async def run_lines(relay, lines, limit=2 ** 16):
    reader = asyncio.StreamReader(limit=limit)
    for line in lines:
        reader.feed_data(line if isinstance(line, bytes) else line.encode("utf-8") + b"\n")
    reader.feed_eof()
    writer = FakeWriter()
    await relay.run(reader, writer)
    return writer


class TestLocalMethods:
    """initialize and ping never touch the host."""

    @pytest.mark.asyncio
    async def test_ping_offline(self, make_relay, fake_host):
        relay = make_relay()

        response = await relay.handle_line(message("ping", id=5))

        assert response == {"jsonrpc": "2.0", "id": 5, "result": {}}
        assert fake_host.requests == []

    @pytest.mark.asyncio
    async def test_initialize_offline(self, make_relay, cache, fake_host):
        cache.write([{"name": "a"}, {"name": "b"}, {"name": "c"}])
        relay = make_relay()

        response = await relay.handle_line(message("initialize", params={"protocolVersion": "2024-11-05"}))

        result = response["result"]
        assert result["serverInfo"]["name"] == "idelink"
        assert "3 tools" in result["instructions"]
        assert fake_host.requests == []

    @pytest.mark.asyncio
    async def test_initialize_with_undecodable_cache(self, make_relay, cache):
        cache.path.parent.mkdir(parents=True, exist_ok=True)
        cache.path.write_bytes(b'{"tools":[\xff\xfe]}')
        relay = make_relay()

        response = await relay.handle_line(message("initialize"))

        assert "error" not in response
        assert "0 tools" in response["result"]["instructions"]

    @pytest.mark.asyncio
    async def test_ping_with_fractional_id(self, make_relay):
        relay = make_relay()

        response = await relay.handle_line(message("ping", id=1.5))

        assert response == {"jsonrpc": "2.0", "id": 1.5, "result": {}}

    @pytest.mark.asyncio
    async def test_initialize_and_ping_while_host_down(self, make_relay, publish, fake_host):
        publish(100, 5100)
        fake_host.modes[5100] = "down"
        relay = make_relay()
        await relay.startup(attempts=1, interval=0)

        assert "result" in await relay.handle_line(message("initialize"))
        assert "result" in await relay.handle_line(message("ping", id=2))
        assert relay.session.is_connected


class TestNotifications:
    """Notifications and acknowledgements produce no output."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["notifications/initialized", "initialized", "notifications/cancelled"])
    async def test_acknowledgements(self, make_relay, method):
        relay = make_relay()
        assert await relay.handle_line(message(method, id=None)) is None

    @pytest.mark.asyncio
    async def test_acknowledgement_with_id(self, make_relay):
        relay = make_relay()
        assert await relay.handle_line(message("notifications/initialized", id=3)) is None

    @pytest.mark.asyncio
    async def test_unknown_notification_dropped(self, make_relay, publish, fake_host):
        publish(100, 5100)
        fake_host.modes[5100] = "ok"
        relay = make_relay()

        assert await relay.handle_line(message("notifications/progress", id=None)) is None
        assert fake_host.requests == []


class TestMalformedInput:
    """Bad lines are dropped without a response."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("line", ["{not json", "[]", "42", '{"id": 1}', "   "])
    async def test_dropped(self, make_relay, line):
        relay = make_relay()
        assert await relay.handle_line(line) is None

    @pytest.mark.asyncio
    async def test_invalid_utf8(self, make_relay):
        relay = make_relay()
        assert await relay.handle_line(b"\xff\xfe{}") is None

    @pytest.mark.asyncio
    async def test_handler_failure_is_internal_error(self, make_relay, mocker):
        relay = make_relay()
        relay._handlers["ping"] = mocker.AsyncMock(side_effect=RuntimeError("boom"))

        response = await relay.handle_line(message("ping", id=9))

        assert response["id"] == 9
        assert response["error"]["code"] == ErrorCode.INTERNAL_ERROR


class TestToolsList:
    """tools/list forwards when possible and falls back to the cache."""

    @pytest.mark.asyncio
    async def test_forwarded(self, make_relay, publish, fake_host):
        publish(100, 5100)
        fake_host.modes[5100] = "ok"
        relay = make_relay()

        response = await relay.handle_line(message("tools/list", id=2))

        assert response["result"]["tools"] == fake_host.tools
        assert fake_host.requests[0][0] == 5100

    @pytest.mark.asyncio
    async def test_offline_uses_cache(self, make_relay, cache):
        tools = [{"name": "build", "description": "Build", "inputSchema": {"type": "object"}}]
        cache.write(tools)
        relay = make_relay()

        response = await relay.handle_line(message("tools/list", id=2))

        assert response["result"] == {"tools": tools}

    @pytest.mark.asyncio
    async def test_offline_without_cache_is_empty(self, make_relay):
        relay = make_relay()

        response = await relay.handle_line(message("tools/list", id=2))

        assert response == {"jsonrpc": "2.0", "id": 2, "result": {"tools": []}}

    @pytest.mark.asyncio
    async def test_offline_with_undecodable_cache_is_empty(self, make_relay, cache):
        cache.path.parent.mkdir(parents=True, exist_ok=True)
        cache.path.write_bytes(b'{"tools":[\xff\xfe]}')
        relay = make_relay()

        response = await relay.handle_line(message("tools/list", id=2))

        assert response == {"jsonrpc": "2.0", "id": 2, "result": {"tools": []}}

    @pytest.mark.asyncio
    async def test_host_failure_uses_cache(self, make_relay, publish, fake_host, cache):
        cache.write([{"name": "cached"}])
        publish(100, 5100)
        fake_host.modes[5100] = "error"
        relay = make_relay()

        response = await relay.handle_line(message("tools/list", id=2))

        assert response["result"]["tools"] == [{"name": "cached"}]


class TestToolsCall:
    """tools/call failures become tool-result errors."""

    @pytest.mark.asyncio
    async def test_forwarded(self, make_relay, publish, fake_host):
        publish(100, 5100)
        fake_host.modes[5100] = "ok"
        relay = make_relay()

        response = await relay.handle_line(call_tool(id=7))

        assert response["id"] == 7
        assert tool_text(response) == "handled by 5100"
        assert fake_host.requests[0][1]["params"]["name"] == "build"

    @pytest.mark.asyncio
    async def test_offline_lists_installations(self, make_relay, config):
        exe = config.install_root / "2022" / "Community" / "Common7" / "IDE" / "devenv.exe"
        exe.parent.mkdir(parents=True)
        exe.write_text("")
        relay = make_relay()

        response = await relay.handle_line(call_tool())

        assert "error" not in response
        assert response["result"]["isError"] is True
        text = tool_text(response)
        assert "VS 2022 Community" in text
        assert str(exe) in text
        assert "Do not guess" in text

    @pytest.mark.asyncio
    async def test_offline_without_installations(self, make_relay):
        relay = make_relay()

        response = await relay.handle_line(call_tool())

        assert response["result"]["isError"] is True
        assert "No IDE installations were detected" in tool_text(response)

    @pytest.mark.asyncio
    async def test_undecodable_record_is_tool_error(self, make_relay, registry, live_pids):
        live_pids.add(100)
        registry.directory.mkdir(parents=True)
        registry.path_for(100).write_bytes(b"\xff\xfe garbage")
        relay = make_relay()

        assert await relay.startup(attempts=1, interval=0) is False
        response = await relay.handle_line(call_tool(id=3))

        assert "error" not in response
        assert response["id"] == 3
        assert response["result"]["isError"] is True

    @pytest.mark.asyncio
    async def test_offline_names_selector(self, make_relay):
        relay = make_relay(Selector(process_id=4242))

        text = tool_text(await relay.handle_line(call_tool()))

        assert "4242" in text

    @pytest.mark.asyncio
    async def test_timeout_keeps_connection(self, make_relay, publish, fake_host):
        publish(100, 5100)
        fake_host.modes[5100] = "slow"
        relay = make_relay()
        await relay.startup(attempts=1, interval=0)

        response = await relay.handle_line(call_tool())

        assert response["result"]["isError"] is True
        assert "timeout" in tool_text(response)
        assert relay.session.is_connected
        assert relay.session.endpoint.port == 5100

    @pytest.mark.asyncio
    async def test_host_error_status(self, make_relay, publish, fake_host):
        publish(100, 5100)
        fake_host.modes[5100] = "error"
        relay = make_relay()

        response = await relay.handle_line(call_tool())

        assert response["result"]["isError"] is True
        assert "HTTP 500" in tool_text(response)
        assert relay.session.is_connected

    @pytest.mark.asyncio
    async def test_no_content(self, make_relay, publish, fake_host):
        publish(100, 5100)
        fake_host.modes[5100] = "no_content"
        relay = make_relay()

        response = await relay.handle_line(call_tool())

        assert response["result"]["isError"] is True

    @pytest.mark.asyncio
    async def test_lazy_reconnect(self, make_relay, publish, fake_host):
        """A host that appears after start-up is picked up on the next call."""
        relay = make_relay()
        assert await relay.startup(attempts=1, interval=0) is False

        publish(100, 5100)
        fake_host.modes[5100] = "ok"

        response = await relay.handle_line(call_tool())

        assert tool_text(response) == "handled by 5100"
        assert relay.session.is_connected


class TestOtherMethods:
    """Unknown methods are forwarded or refused."""

    @pytest.mark.asyncio
    async def test_forwarded(self, make_relay, publish, fake_host):
        publish(100, 5100)
        fake_host.modes[5100] = "ok"
        relay = make_relay()

        response = await relay.handle_line(message("resources/list", id=4))

        assert response["id"] == 4
        assert fake_host.requests[0][1]["method"] == "resources/list"

    @pytest.mark.asyncio
    async def test_offline_method_not_found(self, make_relay):
        relay = make_relay()

        response = await relay.handle_line(message("resources/list", id=4))

        assert response["error"]["code"] == ErrorCode.METHOD_NOT_FOUND
        assert "not running" in response["error"]["message"]

    @pytest.mark.asyncio
    async def test_timeout(self, make_relay, publish, fake_host):
        publish(100, 5100)
        fake_host.modes[5100] = "slow"
        relay = make_relay()

        response = await relay.handle_line(message("resources/list", id=4))

        assert response["error"]["code"] == ErrorCode.HOST_TIMEOUT

    @pytest.mark.asyncio
    async def test_no_content_means_no_response(self, make_relay, publish, fake_host):
        publish(100, 5100)
        fake_host.modes[5100] = "no_content"
        relay = make_relay()

        assert await relay.handle_line(message("resources/list", id=4)) is None


class TestScenarios:
    """End-to-end behaviour across discovery, state and forwarding."""

    @pytest.mark.asyncio
    async def test_single_descriptor_selects_matching_instance(self, make_relay, publish, fake_host, workspace):
        sln = workspace / "App.sln"
        sln.write_text("")
        publish(100, 5100, mtime=2_000_000)
        publish(200, 5200, str(sln), mtime=1_000_000)
        fake_host.modes[5200] = "ok"
        relay = make_relay()

        assert await relay.startup(attempts=1, interval=0)
        assert relay.session.endpoint.port == 5200

        initialize = await relay.handle_line(message("initialize"))
        assert "MULTIPLE SOLUTIONS" not in initialize["result"]["instructions"]

    @pytest.mark.asyncio
    async def test_two_descriptors_one_open(self, make_relay, publish, fake_host, workspace):
        (workspace / "A.sln").write_text("")
        b = workspace / "B.sln"
        b.write_text("")
        publish(200, 5200, str(b))
        fake_host.modes[5200] = "ok"
        relay = make_relay()

        await relay.startup(attempts=1, interval=0)

        assert relay.session.endpoint.port == 5200
        instructions = (await relay.handle_line(message("initialize")))["result"]["instructions"]
        assert "MULTIPLE SOLUTIONS" in instructions
        assert str(workspace / "A.sln") in instructions

    @pytest.mark.asyncio
    async def test_two_descriptors_none_open(self, make_relay, publish, workspace):
        (workspace / "A.sln").write_text("")
        (workspace / "B.sln").write_text("")
        publish(100, 5100, "C:/elsewhere/Other.sln")
        relay = make_relay()

        assert await relay.startup(attempts=1, interval=0) is False

        instructions = (await relay.handle_line(message("initialize")))["result"]["instructions"]
        assert "None of them is open" in instructions
        text = tool_text(await relay.handle_line(call_tool()))
        assert str(workspace / "B.sln") in text

    @pytest.mark.asyncio
    async def test_host_dies_mid_session(self, make_relay, publish, fake_host, live_pids, mocker):
        publish(100, 5100)
        fake_host.modes[5100] = "ok"
        relay = make_relay()
        await relay.startup(attempts=1, interval=0)
        assert tool_text(await relay.handle_line(call_tool(id=1))) == "handled by 5100"

        live_pids.discard(100)
        fake_host.modes[5100] = "down"
        reconnect = mocker.spy(relay.session, "reconnect")

        response = await asyncio.wait_for(relay.handle_line(call_tool(id=2)), timeout=5)

        assert response["id"] == 2
        assert "error" not in response
        assert response["result"]["isError"] is True
        assert not relay.session.is_connected
        assert reconnect.call_count == 1

    @pytest.mark.asyncio
    async def test_host_restarts_on_new_port(self, make_relay, publish, fake_host, live_pids, registry):
        publish(100, 5100)
        fake_host.modes[5100] = "ok"
        relay = make_relay()
        await relay.startup(attempts=1, interval=0)

        # Old process exits; the call that notices it gets an offline answer
        live_pids.discard(100)
        fake_host.modes[5100] = "down"
        first = await relay.handle_line(call_tool(id=1))
        assert first["result"]["isError"] is True

        # New process publishes a new port
        publish(200, 5200)
        fake_host.modes[5200] = "ok"

        second = await relay.handle_line(call_tool(id=2))

        assert tool_text(second) == "handled by 5200"
        assert relay.session.endpoint.process_id == 200
        assert not registry.path_for(100).exists()

    @pytest.mark.asyncio
    async def test_restart_noticed_by_re_resolve(self, make_relay, publish, fake_host, live_pids):
        """The failed call re-resolves, so the next call goes straight to the new port."""
        publish(100, 5100)
        fake_host.modes[5100] = "ok"
        relay = make_relay()
        await relay.startup(attempts=1, interval=0)

        live_pids.discard(100)
        fake_host.modes[5100] = "down"
        publish(200, 5200)
        fake_host.modes[5200] = "ok"

        await relay.handle_line(call_tool(id=1))
        assert relay.session.endpoint.port == 5200

        assert tool_text(await relay.handle_line(call_tool(id=2))) == "handled by 5200"

    @pytest.mark.asyncio
    async def test_nothing_anywhere(self, make_relay, config):
        exe = config.install_root / "2019" / "Professional" / "Common7" / "IDE" / "devenv.exe"
        exe.parent.mkdir(parents=True)
        exe.write_text("")
        relay = make_relay()

        assert await relay.startup(attempts=2, interval=0) is False

        response = await relay.handle_line(call_tool())
        assert response["result"]["isError"] is True
        assert "VS 2019 Professional" in tool_text(response)


class TestStream:
    """Tests for the read-dispatch-write loop."""

    @pytest.mark.asyncio
    async def test_one_line_per_request(self, make_relay):
        relay = make_relay()

        writer = await run_lines(
            relay,
            [
                message("initialize", id=1),
                message("notifications/initialized", id=None),
                "{garbage",
                message("ping", id=2),
                message("tools/list", id=3),
                message("notifications/cancelled", id=None),
                call_tool(id=4),
            ],
        )

        responses = [json.loads(line) for line in writer.lines]
        assert [r["id"] for r in responses] == [1, 2, 3, 4]
        assert all(r["jsonrpc"] == "2.0" for r in responses)

    @pytest.mark.asyncio
    async def test_output_is_single_ascii_line(self, make_relay, cache):
        cache.write([{"name": "build", "description": "Compile\nthe solution \u2713"}])
        relay = make_relay()

        writer = await run_lines(relay, [message("tools/list", id=1)])

        assert len(writer.lines) == 1
        assert writer.data.isascii()
        assert json.loads(writer.lines[0])["result"]["tools"][0]["description"].endswith("\u2713")

    @pytest.mark.asyncio
    async def test_lone_surrogate_id_does_not_stop_loop(self, make_relay):
        relay = make_relay()

        writer = await run_lines(
            relay,
            ['{"jsonrpc":"2.0","id":"\\ud800","method":"ping"}', message("ping", id=2)],
        )

        assert len(writer.lines) == 2
        assert json.loads(writer.lines[0])["id"] == "\ud800"
        assert json.loads(writer.lines[1])["id"] == 2

    @pytest.mark.asyncio
    async def test_deeply_nested_line_skipped(self, make_relay):
        relay = make_relay()

        writer = await run_lines(relay, ["[" * 50_000, message("ping", id=2)], limit=2 ** 17)

        assert [json.loads(line)["id"] for line in writer.lines] == [2]

    @pytest.mark.asyncio
    async def test_over_long_line_skipped(self, make_relay):
        relay = make_relay()
        huge = json.dumps({"jsonrpc": "2.0", "id": 1, "method": "ping", "params": {"pad": "x" * 500}})

        writer = await run_lines(relay, [huge, message("ping", id=2)], limit=128)

        assert [json.loads(line)["id"] for line in writer.lines] == [2]

    @pytest.mark.asyncio
    async def test_eof_closes_transport(self, make_relay, mocker):
        relay = make_relay()
        close = mocker.spy(relay.transport, "aclose")

        await run_lines(relay, [])

        close.assert_called_once()

    @pytest.mark.asyncio
    async def test_cancellation_stops_promptly(self, make_relay):
        relay = make_relay()
        reader = asyncio.StreamReader()
        task = asyncio.create_task(relay.run(reader, FakeWriter()))
        await asyncio.sleep(0)

        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(task, timeout=5)


class TestEndToEnd:
    """Relay forwarding to a real host app over ASGI."""

    @pytest.mark.asyncio
    async def test_relay_to_host(self, config, registry, cache, live_pids, workspace, temp_dir):
        runtime = HostRuntime(registry, cache, port=5555, process_id=4242)
        runtime.tools.register(
            ToolDefinition(name="build", description="Build the solution"),
            lambda arguments: f"built {arguments.get('configuration', 'Debug')}",
        )
        app = create_app(runtime)
        live_pids.add(4242)
        runtime.start()
        runtime.open_workspace(str(temp_dir / "App.sln"))

        client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app))
        resolver = InstanceResolver(registry, start_dir=workspace, max_walk_depth=config.max_walk_depth)
        relay = RelayServer(
            session=RelaySession(resolver, Selector(project_path=str(temp_dir / "App.sln"))),
            transport=HostTransport(timeout=10, client=client),
            cache=cache,
        )

        assert await relay.startup(attempts=1, interval=0)
        assert relay.session.endpoint.port == 5555

        initialize = await relay.handle_line(message("initialize"))
        assert "2 tools" in initialize["result"]["instructions"]

        tools = await relay.handle_line(message("tools/list", id=2))
        assert {t["name"] for t in tools["result"]["tools"]} == {"get_status", "build"}

        built = await relay.handle_line(
            message("tools/call", id=3, params={"name": "build", "arguments": {"configuration": "Release"}})
        )
        assert tool_text(built) == "built Release"

        status = await relay.handle_line(message("tools/call", id=4, params={"name": "get_status"}))
        assert json.loads(tool_text(status))["processId"] == 4242

        missing = await relay.handle_line(message("tools/call", id=5, params={"name": "nope"}))
        assert missing["error"]["code"] == ErrorCode.METHOD_NOT_FOUND

        assert await relay.handle_line(message("notifications/progress", id=None)) is None

        runtime.stop()
        await client.aclose()


class TestBuildRelay:
    """Tests for wiring a relay from configuration."""

    def test_uses_config(self, config, workspace):
        relay = build_relay(config, Selector(process_id=7), start_dir=workspace)

        assert relay.session.selector.process_id == 7
        assert relay.transport.timeout == config.request_timeout
        assert relay.cache.path == config.cache_path
        assert relay.max_line_bytes == config.max_line_bytes
        assert relay.session.resolver.registry.directory == config.data_dir
