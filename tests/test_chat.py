"""Tests for NDJSON stream assembly, turn history, and tool dispatch."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
import json
import unittest

import httpx

from ollama_shell.builtin_tools import register_default_tools
from ollama_shell.chat import (
    ChatOptions,
    NdjsonLineDecoder,
    StreamingTurnExecutor,
    TurnState,
)
from ollama_shell.exceptions import ServiceUnavailableError, UnknownModelError
from ollama_shell.session import ChatSession, Role
from ollama_shell.tooling import ToolRegistry

HOST = "http://localhost:11434"


def _line(content: str, done: bool = False) -> str:
    return (
        json.dumps(
            {
                "model": "llama3.1:latest",
                "created_at": "2024-06-04T14:38:31.83753Z",
                "message": {"role": "assistant", "content": content},
                "done": done,
            }
        )
        + "\n"
    )


def _body(*contents: str) -> bytes:
    lines = [_line(text) for text in contents]
    lines.append(_line("", done=True))
    return "".join(lines).encode("utf-8")


def _split_every(data: bytes, size: int) -> list[bytes]:
    return [data[i : i + size] for i in range(0, len(data), size)]


class FakeChatService:
    """In-process chat endpoint that replays canned chunked bodies."""

    def __init__(
        self,
        replies: list[list[bytes]],
        status_code: int = 200,
        error: Exception | None = None,
    ) -> None:
        self.replies = replies
        self.status_code = status_code
        self.error = error
        self.requests: list[dict] = []
        self.urls: list[str] = []

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.urls.append(str(request.url))
        self.requests.append(json.loads(request.content))
        if self.error is not None:
            raise self.error
        index = min(len(self.requests) - 1, len(self.replies) - 1)
        chunks = self.replies[index]

        async def stream() -> AsyncIterator[bytes]:
            for chunk in chunks:
                yield chunk

        return httpx.Response(self.status_code, content=stream())

    def executor(self, options: ChatOptions | None = None) -> StreamingTurnExecutor:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return StreamingTurnExecutor(HOST, options=options, client=client)


def _session(tools: bool = True) -> ChatSession:
    registry = ToolRegistry()
    if tools:
        register_default_tools(registry, opener=lambda url: True)
    return ChatSession("llama3.1:latest", registry)


class NdjsonLineDecoderTests(unittest.TestCase):
    """Line reassembly independent of chunking."""

    def test_partial_line_is_held_until_newline(self) -> None:
        decoder = NdjsonLineDecoder()
        line = _line("Hello")
        self.assertEqual(decoder.feed(line[:10]), [])
        fragments = decoder.feed(line[10:])
        self.assertEqual([f.message.content for f in fragments], ["Hello"])

    def test_finish_parses_unterminated_last_line(self) -> None:
        decoder = NdjsonLineDecoder()
        self.assertEqual(decoder.feed(_line("tail").rstrip("\n")), [])
        fragments = decoder.finish()
        self.assertEqual([f.message.content for f in fragments], ["tail"])

    def test_blank_and_crlf_lines_are_ignored(self) -> None:
        decoder = NdjsonLineDecoder()
        text = "\n\r\n" + _line("a").replace("\n", "\r\n") + "\n"
        fragments = decoder.feed(text)
        self.assertEqual([f.message.content for f in fragments], ["a"])
        self.assertEqual(decoder.skipped_lines, 0)

    def test_malformed_line_is_logged_and_skipped(self) -> None:
        decoder = NdjsonLineDecoder()
        with self.assertLogs("ollama_shell.chat", level="WARNING") as logs:
            fragments = decoder.feed(_line("a") + "{not json\n" + _line("b"))
        self.assertEqual([f.message.content for f in fragments], ["a", "b"])
        self.assertEqual(decoder.skipped_lines, 1)
        self.assertTrue(
            any("chat.stream.malformed_line" in line for line in logs.output)
        )

    def test_deeply_nested_line_is_skipped(self) -> None:
        decoder = NdjsonLineDecoder()
        text = _line("alpha ") + "[" * 100000 + "\n" + _line("beta")
        with self.assertLogs("ollama_shell.chat", level="WARNING") as logs:
            fragments = decoder.feed(text)
        self.assertEqual([f.message.content for f in fragments], ["alpha ", "beta"])
        self.assertEqual(decoder.skipped_lines, 1)
        self.assertTrue(
            any("chat.stream.malformed_line" in line for line in logs.output)
        )

    def test_json_without_message_is_skipped(self) -> None:
        decoder = NdjsonLineDecoder()
        with self.assertLogs("ollama_shell.chat", level="WARNING"):
            fragments = decoder.feed('{"done": false}\n[1, 2]\n' + _line("ok"))
        self.assertEqual([f.message.content for f in fragments], ["ok"])
        self.assertEqual(decoder.skipped_lines, 2)

    def test_error_fragment_is_logged_and_skipped(self) -> None:
        decoder = NdjsonLineDecoder()
        with self.assertLogs("ollama_shell.chat", level="WARNING") as logs:
            fragments = decoder.feed('{"error": "model crashed"}\n')
        self.assertEqual(fragments, [])
        self.assertTrue(
            any("chat.stream.error_fragment" in line for line in logs.output)
        )


class StreamAssemblyTests(unittest.IsolatedAsyncioTestCase):
    """Assembled text equals the in-order concatenation of fragment contents."""

    async def test_chunk_boundaries_do_not_change_assembled_text(self) -> None:
        body = _body("The ", "answer ", "is ", "forty-two", ".")
        chunkings = [
            [body],
            _split_every(body, 1),
            _split_every(body, 7),
            _split_every(body, 64),
            [body[:3], body[3:150], body[150:]],
        ]
        for chunks in chunkings:
            with self.subTest(chunk_count=len(chunks)):
                service = FakeChatService([chunks])
                async with service.executor() as executor:
                    result = await executor.run_turn(_session(), "question")
                self.assertEqual(result.text, "The answer is forty-two.")
                self.assertEqual(result.fragment_count, 5)

    async def test_multibyte_characters_split_across_chunks(self) -> None:
        body = _body("café ", "naïve ", "日本")
        service = FakeChatService([_split_every(body, 3)])
        async with service.executor() as executor:
            result = await executor.run_turn(_session(), "unicode")
        self.assertEqual(result.text, "café naïve 日本")

    async def test_malformed_line_yields_same_text_as_stream_without_it(self) -> None:
        clean = _line("alpha ") + _line("beta ") + _line("gamma", done=True)
        dirty = (
            _line("alpha ")
            + '{"message": {"content": "broken\n'
            + _line("beta ")
            + _line("gamma", done=True)
        )

        clean_service = FakeChatService([[clean.encode()]])
        async with clean_service.executor() as executor:
            clean_result = await executor.run_turn(_session(), "q")

        dirty_service = FakeChatService([_split_every(dirty.encode(), 5)])
        async with dirty_service.executor() as executor:
            with self.assertLogs("ollama_shell.chat", level="WARNING") as logs:
                dirty_result = await executor.run_turn(_session(), "q")

        self.assertEqual(dirty_result.text, clean_result.text)
        self.assertEqual(dirty_result.text, "alpha beta gamma")
        self.assertTrue(
            any("chat.stream.malformed_line" in line for line in logs.output)
        )

    async def test_deeply_nested_line_does_not_abort_turn(self) -> None:
        body = _line("alpha ") + "[" * 100000 + "\n" + _line("beta", done=True)
        service = FakeChatService([[body.encode()]])
        async with service.executor() as executor:
            with self.assertLogs("ollama_shell.chat", level="WARNING"):
                result = await executor.run_turn(ChatSession("m"), "q")
            self.assertEqual(executor.state, TurnState.DONE)
        self.assertEqual(result.text, "alpha beta")

    async def test_exactly_one_assistant_message_per_turn(self) -> None:
        for count in (1, 5, 500):
            with self.subTest(fragments=count):
                contents = [f"t{i} " for i in range(count)]
                service = FakeChatService([[_body(*contents)]])
                session = _session()
                async with service.executor() as executor:
                    result = await executor.run_turn(session, "go")
                roles = [m.role for m in session.messages]
                self.assertEqual(roles, [Role.USER, Role.ASSISTANT])
                self.assertEqual(session.last_assistant_text(), "".join(contents))
                self.assertEqual(result.fragment_count, count)

    async def test_fragments_are_surfaced_incrementally_in_order(self) -> None:
        service = FakeChatService([[_body("one", " two", " three")]])
        received: list[str] = []
        async with service.executor() as executor:
            await executor.run_turn(_session(), "count", on_fragment=received.append)
        self.assertEqual(received, ["one", " two", " three"])

    async def test_stream_reply_is_a_lazy_fragment_sequence(self) -> None:
        service = FakeChatService([[_body("a", "b", "c")]])
        session = _session()
        session.append_user("hi")
        async with service.executor() as executor:
            fragments = [text async for text in executor.stream_reply(session)]
        self.assertEqual(fragments, ["a", "b", "c"])
        # Streaming alone never touches history.
        self.assertEqual(len(session), 1)


class TurnHistoryTests(unittest.IsolatedAsyncioTestCase):
    """Request payload and history mutation rules."""

    async def test_request_payload_carries_model_history_and_tools(self) -> None:
        service = FakeChatService([[_body("Hi!")]])
        session = _session()
        async with service.executor() as executor:
            await executor.run_turn(session, "Hello")

        self.assertEqual(service.urls, [f"{HOST}/api/chat"])
        payload = service.requests[0]
        self.assertEqual(set(payload), {"model", "messages", "tools"})
        self.assertEqual(payload["model"], "llama3.1:latest")
        self.assertEqual(payload["messages"], [{"role": "user", "content": "Hello"}])
        names = [tool["function"]["name"] for tool in payload["tools"]]
        self.assertEqual(names, ["math_calculator", "open_url"])

    async def test_second_turn_sends_full_history(self) -> None:
        service = FakeChatService([[_body("first")], [_body("second")]])
        session = _session()
        async with service.executor() as executor:
            await executor.run_turn(session, "one")
            await executor.run_turn(session, "two")

        self.assertEqual(
            service.requests[1]["messages"],
            [
                {"role": "user", "content": "one"},
                {"role": "assistant", "content": "first"},
                {"role": "user", "content": "two"},
            ],
        )
        self.assertEqual(session.last_assistant_text(), "second")

    async def test_turn_without_prompt_appends_only_assistant(self) -> None:
        service = FakeChatService([[_body("continuing")]])
        session = _session()
        session.append_user("earlier")
        async with service.executor() as executor:
            await executor.run_turn(session)
        self.assertEqual(
            [m.role for m in session.messages], [Role.USER, Role.ASSISTANT]
        )

    async def test_state_is_done_after_completed_turn(self) -> None:
        service = FakeChatService([[_body("ok")]])
        async with service.executor() as executor:
            self.assertEqual(executor.state, TurnState.IDLE)
            await executor.run_turn(_session(), "hi")
            self.assertEqual(executor.state, TurnState.DONE)


class TransportFailureTests(unittest.IsolatedAsyncioTestCase):
    """Transport and status failures abort the turn after the user append."""

    async def test_connect_error_raises_service_unavailable(self) -> None:
        service = FakeChatService([[]], error=httpx.ConnectError("refused"))
        session = _session()
        async with service.executor() as executor:
            with self.assertRaises(ServiceUnavailableError) as ctx:
                await executor.run_turn(session, "hello")
            self.assertEqual(executor.state, TurnState.IDLE)

        self.assertEqual(ctx.exception.host, HOST)
        self.assertEqual([m.role for m in session.messages], [Role.USER])

    async def test_session_remains_usable_after_failure(self) -> None:
        failing = FakeChatService([[]], error=httpx.ReadTimeout("slow"))
        session = _session()
        async with failing.executor() as executor:
            with self.assertRaises(ServiceUnavailableError):
                await executor.run_turn(session, "first try")

        working = FakeChatService([[_body("recovered")]])
        async with working.executor() as executor:
            result = await executor.run_turn(session)
        self.assertEqual(result.text, "recovered")
        self.assertEqual(
            working.requests[0]["messages"],
            [{"role": "user", "content": "first try"}],
        )

    async def test_server_error_status_raises_service_unavailable(self) -> None:
        service = FakeChatService([[b'{"error": "boom"}']], status_code=500)
        async with service.executor() as executor:
            with self.assertRaises(ServiceUnavailableError) as ctx:
                await executor.run_turn(_session(), "hello")
        self.assertIn("HTTP 500", str(ctx.exception))

    async def test_not_found_status_raises_unknown_model(self) -> None:
        service = FakeChatService(
            [[b'{"error": "model \\"llama3.1:latest\\" not found"}']],
            status_code=404,
        )
        async with service.executor() as executor:
            with self.assertRaises(UnknownModelError) as ctx:
                await executor.run_turn(_session(), "hello")
        self.assertEqual(ctx.exception.requested, "llama3.1:latest")

    async def test_cancellation_appends_nothing_and_resets_state(self) -> None:
        first_fragment = asyncio.Event()
        never = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            async def stream() -> AsyncIterator[bytes]:
                yield _line("partial").encode()
                await never.wait()
                yield _line("unreachable").encode()

            return httpx.Response(200, content=stream())

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        executor = StreamingTurnExecutor(HOST, client=client)
        session = _session()
        task = asyncio.create_task(
            executor.run_turn(
                session, "long", on_fragment=lambda _text: first_fragment.set()
            )
        )
        await asyncio.wait_for(first_fragment.wait(), timeout=5)
        task.cancel()
        with self.assertRaises(asyncio.CancelledError):
            await task
        await client.aclose()

        self.assertEqual([m.role for m in session.messages], [Role.USER])
        self.assertEqual(executor.state, TurnState.IDLE)


class TurnSerializationTests(unittest.IsolatedAsyncioTestCase):
    """One executor runs at most one turn at a time."""

    async def test_concurrent_turn_is_rejected(self) -> None:
        first_fragment = asyncio.Event()
        release = asyncio.Event()

        async def handler(request: httpx.Request) -> httpx.Response:
            async def stream() -> AsyncIterator[bytes]:
                yield _line("held ").encode()
                await release.wait()
                yield _line("released", done=True).encode()

            return httpx.Response(200, content=stream())

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        executor = StreamingTurnExecutor(HOST, client=client)
        first_session = _session()
        first = asyncio.create_task(
            executor.run_turn(
                first_session, "one", on_fragment=lambda _text: first_fragment.set()
            )
        )
        await asyncio.wait_for(first_fragment.wait(), timeout=5)

        other_session = _session()
        with self.assertRaises(RuntimeError):
            await executor.run_turn(other_session, "two")
        self.assertEqual(len(other_session), 0)

        release.set()
        result = await asyncio.wait_for(first, timeout=5)
        self.assertEqual(result.text, "held released")
        self.assertFalse(executor._in_flight)
        self.assertEqual(executor.state, TurnState.DONE)

        follow_up = await executor.run_turn(other_session, "three")
        self.assertEqual(follow_up.text, "held released")
        await client.aclose()


class ToolDispatchTests(unittest.IsolatedAsyncioTestCase):
    """Tool-call detection on the assembled reply."""

    async def test_registered_tool_call_appends_tool_message(self) -> None:
        call = '{"name": "math_calculator", "parameters": {"expression": "2+2"}}'
        service = FakeChatService([[_body(call[:20], call[20:45], call[45:])]])
        session = _session()
        async with service.executor() as executor:
            result = await executor.run_turn(session, "What is 2+2?")

        self.assertTrue(result.tool_invoked)
        self.assertEqual(result.tool_name, "math_calculator")
        self.assertEqual(result.tool_result, "4")
        self.assertEqual(result.text, call)
        self.assertEqual(
            [m.role for m in session.messages],
            [Role.USER, Role.ASSISTANT, Role.TOOL],
        )
        self.assertEqual(session.messages[-1].content, "4")
        self.assertEqual(session.last_assistant_text(), call)

    async def test_unknown_tool_json_is_plain_assistant_content(self) -> None:
        text = '{"name": "launch_rockets", "parameters": {"count": "3"}}'
        service = FakeChatService([[_body(text)]])
        session = _session()
        async with service.executor() as executor:
            result = await executor.run_turn(session, "do it")

        self.assertFalse(result.tool_invoked)
        self.assertEqual(result.text, text)
        self.assertEqual(
            [m.role for m in session.messages], [Role.USER, Role.ASSISTANT]
        )

    async def test_prose_reply_does_not_dispatch(self) -> None:
        service = FakeChatService([[_body("Sure, ", "2+2 is 4.")]])
        session = _session()
        async with service.executor() as executor:
            result = await executor.run_turn(session, "What is 2+2?")
        self.assertFalse(result.tool_invoked)
        self.assertEqual(len(session), 2)

    async def test_missing_argument_becomes_error_tool_message(self) -> None:
        call = '{"name": "math_calculator", "parameters": {}}'
        service = FakeChatService([[_body(call)]])
        session = _session()
        async with service.executor() as executor:
            with self.assertLogs("ollama_shell.chat", level="WARNING") as logs:
                result = await executor.run_turn(session, "calc")

        self.assertTrue(result.tool_invoked)
        self.assertEqual(
            session.messages[-1].content,
            "Error calling math_calculator: "
            "No such argument 'expression' to function 'math_calculator'",
        )
        self.assertTrue(any("chat.tool.error" in line for line in logs.output))

    async def test_unexpected_argument_becomes_error_tool_message(self) -> None:
        call = (
            '{"name": "math_calculator", '
            '"parameters": {"expression": "1", "extra": "x"}}'
        )
        service = FakeChatService([[_body(call)]])
        session = _session()
        async with service.executor() as executor:
            with self.assertLogs("ollama_shell.chat", level="WARNING"):
                result = await executor.run_turn(session, "calc")

        self.assertTrue(result.tool_invoked)
        self.assertEqual(session.messages[-1].role, Role.TOOL)
        self.assertEqual(
            session.messages[-1].content,
            "Error calling math_calculator: "
            "Function 'math_calculator' does not take a 'extra' argument",
        )

    async def test_no_follow_up_turn_by_default(self) -> None:
        call = '{"name": "math_calculator", "parameters": {"expression": "6*7"}}'
        service = FakeChatService([[_body(call)], [_body("It is 42.")]])
        session = _session()
        async with service.executor() as executor:
            results = await executor.run_conversation_turn(session, "6*7?")

        self.assertEqual(len(results), 1)
        self.assertEqual(len(service.requests), 1)
        self.assertEqual(session.messages[-1].content, "42")

    async def test_auto_follow_up_lets_model_read_tool_result(self) -> None:
        call = '{"name": "math_calculator", "parameters": {"expression": "6*7"}}'
        service = FakeChatService([[_body(call)], [_body("It is 42.")]])
        session = _session()
        options = ChatOptions(auto_follow_up=True, max_follow_up_turns=3)
        async with service.executor(options) as executor:
            results = await executor.run_conversation_turn(session, "6*7?")

        self.assertEqual([r.tool_invoked for r in results], [True, False])
        self.assertEqual(len(service.requests), 2)
        self.assertEqual(
            service.requests[1]["messages"][-1], {"role": "tool", "content": "42"}
        )
        self.assertEqual(
            [m.role for m in session.messages],
            [Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT],
        )
        self.assertEqual(session.last_assistant_text(), "It is 42.")

    async def test_follow_up_turns_are_bounded(self) -> None:
        call = '{"name": "math_calculator", "parameters": {"expression": "1+1"}}'
        service = FakeChatService([[_body(call)]])
        options = ChatOptions(auto_follow_up=True, max_follow_up_turns=2)
        async with service.executor(options) as executor:
            results = await executor.run_conversation_turn(_session(), "loop")
        self.assertEqual(len(results), 3)
        self.assertEqual(len(service.requests), 3)


if __name__ == "__main__":
    unittest.main()
