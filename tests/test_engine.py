import asyncio
import threading

import pytest

from aiservice.audit import InMemoryAuditService
from aiservice.engine import AiServiceContext, InvocationEngine
from aiservice.errors import (
    ConfigurationError,
    ModerationError,
    NullArgumentError,
    TemplateBindingError,
    ToolLoopExceededError,
    UnknownToolError,
)
from aiservice.memory import ChatMemoryProvider, ConversationMemory
from aiservice.models import ChatMessage, ModelResponse, TextSegment, TokenUsage, ToolSpecification
from aiservice.retrieval import RETRIEVAL_PREAMBLE
from aiservice.streaming import TokenStream
from aiservice.tools import ToolRegistry

from doubles import (
    CountingMemoryStore,
    FixedModeration,
    RaisingChatModel,
    RaisingModeration,
    RecordingToolExecutor,
    ScriptedChatModel,
    make_metadata,
    texts,
    tool_call,
)

CHAT = {
    "params": ["conversation_id", "message"],
    "system_message": "You are terse.",
    "user_message_param": "message",
    "memory_id": "conversation_id",
}


def run(coro):
    return asyncio.run(coro)


def _context(model, **kwargs) -> AiServiceContext:
    return AiServiceContext(service_id="svc", chat_model=model, **kwargs)


def _memory(store=None, max_messages=None) -> ConversationMemory:
    return ConversationMemory(ChatMemoryProvider(store if store is not None else CountingMemoryStore(), max_messages=max_messages))


def _tools(**executors) -> ToolRegistry:
    registry = ToolRegistry()
    for name, executor in executors.items():
        registry.register(ToolSpecification(name=name, description=f"{name} tool"), executor)
    return registry


class StaticRetriever:
    def __init__(self, segments):
        self.segments = segments
        self.queries = []

    def find_relevant(self, text):
        self.queries.append(text)
        return list(self.segments)


### Message assembly and plain calls ##########################################


def test_template_method_without_memory_calls_model_once():
    metadata = make_metadata({"params": ["name"], "user_message": "Hello {name}"})
    model = ScriptedChatModel("Hi Ada")

    result = run(InvocationEngine().invoke(metadata, _context(model), ["Ada"]))

    assert result == "Hi Ada"
    assert len(model.calls) == 1
    assert texts(model.calls[0]) == [("user", "Hello Ada")]
    # no tools registered, so none are advertised
    assert model.tool_specifications == [None]


def test_system_message_precedes_user_message():
    metadata = make_metadata(
        {"params": ["topic", "question"], "system_message": "You are an expert in {topic}.", "user_message_param": "question"}
    )
    model = ScriptedChatModel("sure")

    run(InvocationEngine().invoke(metadata, _context(model), ["birds", "Do owls sleep?"]))

    assert texts(model.calls[0]) == [("system", "You are an expert in birds."), ("user", "Do owls sleep?")]


def test_user_name_is_attached_to_user_message():
    metadata = make_metadata(
        {"params": ["user", "message"], "user_message_param": "message", "user_name": "user"}
    )
    model = ScriptedChatModel("hello")

    run(InvocationEngine().invoke(metadata, _context(model), ["klaus", "hi"]))

    assert model.calls[0][-1].name == "klaus"


def test_null_user_message_argument_fails():
    metadata = make_metadata()
    model = ScriptedChatModel()

    with pytest.raises(NullArgumentError):
        run(InvocationEngine().invoke(metadata, _context(model), [None]))
    assert model.calls == []


def test_missing_template_argument_fails_with_binding_error():
    metadata = make_metadata({"params": ["name"], "user_message": "Hello {name}"})

    with pytest.raises(TemplateBindingError):
        run(InvocationEngine().invoke(metadata, _context(ScriptedChatModel()), []))


def test_model_transport_error_propagates_unchanged():
    metadata = make_metadata()

    with pytest.raises(RuntimeError, match="model transport failure"):
        run(InvocationEngine().invoke(metadata, _context(RaisingChatModel()), ["hi"]))


### Tool loop ##################################################################


def test_tool_request_is_executed_and_model_called_again():
    metadata = make_metadata()
    model = ScriptedChatModel(tool_call("lookup", '{"q": "x"}', request_id="c1"), "the answer is 42")
    lookup = RecordingToolExecutor("42")

    result = run(InvocationEngine().invoke(metadata, _context(model, tools=_tools(lookup=lookup)), ["question"]))

    assert result == "the answer is 42"
    assert len(model.calls) == 2
    assert [s.name for s in model.tool_specifications[0]] == ["lookup"]

    request, memory_id = lookup.calls[0]
    assert request.name == "lookup"
    assert request.arguments == '{"q": "x"}'
    assert memory_id == "default"

    second = model.calls[1]
    assert [m.role for m in second] == ["user", "assistant", "tool"]
    assert second[-1].text == "42"
    assert second[-1].tool_request_id == "c1"
    assert second[-1].tool_name == "lookup"


def test_tool_executor_receives_conversation_key():
    metadata = make_metadata(CHAT)
    lookup = RecordingToolExecutor()
    model = ScriptedChatModel(tool_call("lookup"), "done")

    run(InvocationEngine().invoke(metadata, _context(model, memory=_memory(), tools=_tools(lookup=lookup)), ["u7", "hi"]))

    assert lookup.calls[0][1] == "u7"


def test_memory_holds_tool_results_right_after_requesting_message():
    store = CountingMemoryStore()
    metadata = make_metadata(CHAT)
    two_requests = ChatMessage.assistant(
        tool_execution_requests=[
            tool_call("a", request_id="1").tool_execution_requests[0],
            tool_call("b", request_id="2").tool_execution_requests[0],
        ]
    )
    model = ScriptedChatModel(two_requests, tool_call("a", request_id="3"), "final")
    context = _context(
        model,
        memory=_memory(store),
        tools=_tools(a=RecordingToolExecutor("A"), b=RecordingToolExecutor("B")),
    )

    result = run(InvocationEngine().invoke(metadata, context, ["k", "go"]))

    assert result == "final"
    stored = store.get_messages("k")
    assert [m.role for m in stored] == [
        "system",
        "user",
        "assistant",
        "tool",
        "tool",
        "assistant",
        "tool",
        "assistant",
    ]
    assert [m.text for m in stored if m.role == "tool"] == ["A", "B", "A"]
    assert [m.tool_request_id for m in stored if m.role == "tool"] == ["1", "2", "3"]
    assert stored[-1].text == "final"


def test_unknown_tool_fails_invocation():
    metadata = make_metadata()
    model = ScriptedChatModel(tool_call("missing"))

    with pytest.raises(UnknownToolError) as exc:
        run(InvocationEngine().invoke(metadata, _context(model, tools=_tools(lookup=RecordingToolExecutor())), ["q"]))
    assert exc.value.tool_name == "missing"
    assert len(model.calls) == 1


def test_tool_loop_stops_after_ten_model_calls():
    metadata = make_metadata()
    model = ScriptedChatModel(tool_call("lookup"))
    lookup = RecordingToolExecutor()

    with pytest.raises(ToolLoopExceededError) as exc:
        run(InvocationEngine().invoke(metadata, _context(model, tools=_tools(lookup=lookup)), ["q"]))

    assert exc.value.limit == 10
    assert len(model.calls) == 10
    assert len(lookup.calls) == 9


def test_tool_loop_succeeds_on_the_tenth_call():
    metadata = make_metadata()
    answers = [tool_call("lookup")] * 9 + ["finally"]
    model = ScriptedChatModel(*answers)

    result = run(InvocationEngine().invoke(metadata, _context(model, tools=_tools(lookup=RecordingToolExecutor())), ["q"]))

    assert result == "finally"
    assert len(model.calls) == 10


def test_tool_loop_bound_is_configurable():
    metadata = make_metadata()
    model = ScriptedChatModel(tool_call("lookup"))

    with pytest.raises(ToolLoopExceededError):
        run(InvocationEngine(max_model_calls=3).invoke(metadata, _context(model, tools=_tools(lookup=RecordingToolExecutor())), ["q"]))
    assert len(model.calls) == 3


def test_token_usage_is_summed_over_every_model_call():
    metadata = make_metadata({"params": ["message"], "user_message_param": "message", "returns": "response"})
    model = ScriptedChatModel(tool_call("lookup"), tool_call("lookup"), "final")

    result = run(InvocationEngine().invoke(metadata, _context(model, tools=_tools(lookup=RecordingToolExecutor())), ["q"]))

    assert isinstance(result, ModelResponse)
    assert result.content.text == "final"
    assert result.finish_reason == "stop"
    assert result.token_usage == TokenUsage(input_token_count=3, output_token_count=6, total_token_count=9)


def test_token_usage_keeps_last_finish_reason():
    metadata = make_metadata({"params": ["message"], "user_message_param": "message", "returns": "response"})
    first = ModelResponse(content=tool_call("lookup"), token_usage=TokenUsage(input_token_count=5), finish_reason="tool_calls")
    last = ModelResponse(content=ChatMessage.assistant("ok"), token_usage=TokenUsage(input_token_count=7, output_token_count=1), finish_reason="length")
    model = ScriptedChatModel(first, last)

    result = run(InvocationEngine().invoke(metadata, _context(model, tools=_tools(lookup=RecordingToolExecutor())), ["q"]))

    assert result.finish_reason == "length"
    assert result.token_usage.input_token_count == 12
    assert result.token_usage.output_token_count == 1
    assert result.token_usage.total_token_count is None


### Memory #####################################################################


def test_conversation_key_reuse_sends_previous_exchange_as_history():
    metadata = make_metadata({k: v for k, v in CHAT.items() if k != "system_message"})
    memory = _memory()
    engine = InvocationEngine()

    first_model = ScriptedChatModel("Nice to meet you Klaus")
    run(engine.invoke(metadata, _context(first_model, memory=memory), ["u1", "Hello, my name is Klaus"]))
    second_model = ScriptedChatModel("Your name is Klaus")
    run(engine.invoke(metadata, _context(second_model, memory=memory), ["u1", "What is my name?"]))

    assert texts(second_model.calls[0]) == [
        ("user", "Hello, my name is Klaus"),
        ("assistant", "Nice to meet you Klaus"),
        ("user", "What is my name?"),
    ]
    assert len(memory.load("u1")) == 4


def test_conversation_keys_are_isolated():
    metadata = make_metadata(CHAT)
    memory = _memory()
    engine = InvocationEngine()

    run(engine.invoke(metadata, _context(ScriptedChatModel("one"), memory=memory), ["u1", "first"]))
    model = ScriptedChatModel("two")
    run(engine.invoke(metadata, _context(model, memory=memory), ["u2", "second"]))

    assert texts(model.calls[0]) == [("system", "You are terse."), ("user", "second")]


def test_same_system_message_is_stored_once():
    metadata = make_metadata(CHAT)
    store = CountingMemoryStore()
    memory = _memory(store)
    engine = InvocationEngine()

    run(engine.invoke(metadata, _context(ScriptedChatModel("a1"), memory=memory), ["k", "q1"]))
    run(engine.invoke(metadata, _context(ScriptedChatModel("a2"), memory=memory), ["k", "q2"]))

    assert texts(store.get_messages("k")) == [
        ("system", "You are terse."),
        ("user", "q1"),
        ("assistant", "a1"),
        ("user", "q2"),
        ("assistant", "a2"),
    ]


def test_without_memory_nothing_is_carried_between_invocations():
    metadata = make_metadata(CHAT)
    context = _context(ScriptedChatModel("a"))
    engine = InvocationEngine()

    run(engine.invoke(metadata, context, ["k", "first"]))
    model = ScriptedChatModel("b")
    run(engine.invoke(metadata, context.with_chat_model(model), ["k", "second"]))

    assert texts(model.calls[0]) == [("system", "You are terse."), ("user", "second")]
    assert context.memory.has_memory() is False
    assert context.memory.load("k") == []


def test_messages_are_reloaded_before_each_model_call():
    store = CountingMemoryStore()
    metadata = make_metadata(CHAT)

    class InterleavingModel(ScriptedChatModel):
        def generate(self, messages, tool_specifications=None):
            response = super().generate(messages, tool_specifications)
            if len(self.calls) == 1:
                # another invocation extends the same conversation meanwhile
                store.update_messages("k", store.get_messages("k") + [ChatMessage.user("from elsewhere")])
            return response

    model = InterleavingModel(tool_call("lookup"), "done")
    context = _context(model, memory=_memory(store), tools=_tools(lookup=RecordingToolExecutor()))

    run(InvocationEngine().invoke(metadata, context, ["k", "hi"]))

    assert "from elsewhere" in [m.text for m in model.calls[1]]


def test_exceeded_tool_loop_leaves_memory_ending_with_tool_result():
    store = CountingMemoryStore()
    metadata = make_metadata(CHAT)
    model = ScriptedChatModel(tool_call("lookup"))
    context = _context(model, memory=_memory(store), tools=_tools(lookup=RecordingToolExecutor()))

    with pytest.raises(ToolLoopExceededError):
        run(InvocationEngine(max_model_calls=3).invoke(metadata, context, ["k", "loop"]))

    stored = store.get_messages("k")
    assert stored[-1].role == "tool"
    requests = [m for m in stored if m.has_tool_execution_requests()]
    results = [m for m in stored if m.role == "tool"]
    assert len(requests) == len(results) == 2


def test_missing_conversation_key_is_rejected():
    metadata = make_metadata(CHAT)
    store = CountingMemoryStore()
    memory = _memory(store)
    engine = InvocationEngine()

    for text in ["alice secret", "bob"]:
        model = ScriptedChatModel()
        with pytest.raises(NullArgumentError) as exc:
            run(engine.invoke(metadata, _context(model, memory=memory), [None, text]))
        assert exc.value.position == 0
        assert model.calls == []

    assert store.counts["update"] == 0


def test_omitted_conversation_key_is_rejected():
    metadata = make_metadata(CHAT)

    with pytest.raises(NullArgumentError):
        run(InvocationEngine().invoke(metadata, _context(ScriptedChatModel(), memory=_memory()), []))


### Retrieval ##################################################################


def test_empty_retrieval_leaves_user_message_untouched():
    metadata = make_metadata()
    retriever = StaticRetriever([])
    model = ScriptedChatModel()

    run(InvocationEngine().invoke(metadata, _context(model, retriever=retriever), ["What is a tool loop?"]))

    assert retriever.queries == ["What is a tool loop?"]
    assert model.calls[0][-1].text == "What is a tool loop?"


def test_retrieved_segments_are_appended_to_user_message_and_memory():
    metadata = make_metadata(CHAT)
    store = CountingMemoryStore()
    retriever = StaticRetriever([TextSegment(text="fact one"), TextSegment(text="fact two")])
    model = ScriptedChatModel()
    audits = InMemoryAuditService()

    run(
        InvocationEngine().invoke(
            metadata,
            _context(model, retriever=retriever, memory=_memory(store), audit_service=audits),
            ["k", "question"],
        )
    )

    expected = "question" + RETRIEVAL_PREAMBLE + "fact one\n\nfact two"
    assert model.calls[0][-1].text == expected
    assert store.get_messages("k")[1].text == expected
    audit = audits.completed[0]
    assert audit.user_message.text == "question"
    assert [s.text for s in audit.relevant_documents] == ["fact one", "fact two"]


### Moderation #################################################################

MODERATED = {"params": ["message"], "user_message_param": "message", "moderate": True}


def test_flagged_moderation_fails_and_discards_answer():
    metadata = make_metadata({**CHAT, "moderate": True})
    store = CountingMemoryStore()
    model = ScriptedChatModel("an answer")
    moderation = FixedModeration(flagged=True, flagged_text="bad words")

    with pytest.raises(ModerationError) as exc:
        run(
            InvocationEngine().invoke(
                metadata, _context(model, moderation_model=moderation, memory=_memory(store)), ["k", "bad words"]
            )
        )

    assert exc.value.flagged_text == "bad words"
    assert len(model.calls) == 1
    assert "an answer" not in [m.text for m in store.get_messages("k")]


def test_unflagged_moderation_returns_answer():
    metadata = make_metadata(MODERATED)
    moderation = FixedModeration(flagged=False)

    result = run(InvocationEngine().invoke(metadata, _context(ScriptedChatModel("fine"), moderation_model=moderation), ["hello"]))

    assert result == "fine"
    assert texts(moderation.calls[0]) == [("user", "hello")]


def test_moderation_is_skipped_for_methods_that_do_not_require_it():
    metadata = make_metadata()
    moderation = FixedModeration(flagged=True, flagged_text="x")

    result = run(InvocationEngine().invoke(metadata, _context(ScriptedChatModel("ok"), moderation_model=moderation), ["x"]))

    assert result == "ok"
    assert moderation.calls == []


def test_moderation_failure_propagates():
    metadata = make_metadata(MODERATED)

    with pytest.raises(ConnectionError):
        run(InvocationEngine().invoke(metadata, _context(ScriptedChatModel(), moderation_model=RaisingModeration()), ["hi"]))


def test_moderation_required_without_model_is_a_configuration_error():
    metadata = make_metadata(MODERATED)

    with pytest.raises(ConfigurationError):
        run(InvocationEngine().invoke(metadata, _context(ScriptedChatModel()), ["hi"]))


def test_moderation_runs_concurrently_with_model_call():
    metadata = make_metadata(MODERATED)
    model_started = threading.Event()
    moderation_done = threading.Event()
    seen = {}

    class WaitingModel(ScriptedChatModel):
        def generate(self, messages, tool_specifications=None):
            model_started.set()
            seen["model_saw_moderation"] = moderation_done.wait(2)
            return super().generate(messages, tool_specifications)

    class WaitingModeration(FixedModeration):
        def moderate(self, messages):
            seen["moderation_saw_model"] = model_started.wait(2)
            moderation_done.set()
            return super().moderate(messages)

    result = run(
        InvocationEngine().invoke(metadata, _context(WaitingModel("ok"), moderation_model=WaitingModeration()), ["hi"])
    )

    assert result == "ok"
    assert seen == {"model_saw_moderation": True, "moderation_saw_model": True}


def test_moderation_ignores_tool_messages_in_history():
    metadata = make_metadata({**CHAT, "moderate": True})
    store = CountingMemoryStore()
    store.update_messages(
        "k",
        [
            ChatMessage.user("earlier"),
            tool_call("lookup"),
            ChatMessage.tool_result(tool_call("lookup").tool_execution_requests[0], "secret tool output"),
            ChatMessage.assistant("earlier answer"),
        ],
    )
    moderation = FixedModeration()

    run(InvocationEngine().invoke(metadata, _context(ScriptedChatModel(), moderation_model=moderation, memory=_memory(store)), ["k", "now"]))

    moderated = moderation.calls[0]
    assert all(m.role != "tool" for m in moderated)
    assert "earlier answer" in [m.text for m in moderated]


### Audit ######################################################################


def test_audit_is_completed_once_on_success():
    metadata = make_metadata()
    audits = InMemoryAuditService()
    model = ScriptedChatModel(tool_call("lookup"), "done")

    result = run(
        InvocationEngine().invoke(
            metadata, _context(model, tools=_tools(lookup=RecordingToolExecutor("42")), audit_service=audits), ["q"]
        )
    )

    assert len(audits.completed) == 1
    audit = audits.completed[0]
    assert audit.succeeded
    assert audit.result == result == "done"
    assert audit.create_info.interface_name == "svc"
    assert audit.create_info.method_name == "call"
    assert audit.create_info.arguments == ("q",)
    assert [kind for kind, _ in audit.exchanges] == ["model", "tool", "model"]
    assert audit.exchanges[1][1].text == "42"


@pytest.mark.parametrize(
    "model,arguments,error",
    [
        (ScriptedChatModel(tool_call("nope")), ["q"], UnknownToolError),
        (RaisingChatModel(), ["q"], RuntimeError),
        (ScriptedChatModel(), [None], NullArgumentError),
    ],
)
def test_audit_is_completed_once_on_failure(model, arguments, error):
    metadata = make_metadata()
    audits = InMemoryAuditService()

    with pytest.raises(error):
        run(InvocationEngine().invoke(metadata, _context(model, audit_service=audits), arguments))

    assert len(audits.completed) == 1
    assert isinstance(audits.completed[0].error, error)
    assert audits.completed[0].result is None


def test_completed_audits_are_capped():
    audits = InMemoryAuditService(max_audits=2)
    metadata = make_metadata()
    engine = InvocationEngine()

    for text in ["one", "two", "three"]:
        run(engine.invoke(metadata, _context(ScriptedChatModel(text), audit_service=audits), [text]))

    assert [audit.result for audit in audits.completed] == ["two", "three"]


### Streaming ##################################################################


def test_stream_return_shape_bypasses_model_call():
    metadata = make_metadata({**CHAT, "returns": "stream"})
    model = ScriptedChatModel()
    memory = _memory()

    stream = run(InvocationEngine().invoke(metadata, _context(model, memory=memory), ["k", "tell me"]))

    assert isinstance(stream, TokenStream)
    assert model.calls == []
    assert texts(stream.messages) == [("system", "You are terse."), ("user", "tell me")]
    assert stream.memory_id == "k"
