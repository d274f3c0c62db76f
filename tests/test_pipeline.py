import unittest

from langchain_core.documents import Document

from docchat.clients import ServiceClients
from docchat.errors import RetrievalError, SerializationError, UpstreamModelError, ValidationError
from docchat.multiplexer import decode_manifest
from docchat.pipeline import PipelineOrchestrator, PipelineRun, PipelineState
from docchat.synthesizer import NO_CONTEXT_ANSWER

from fakes import FakeVectorIndex, RecordingChatModel, UnreachableChatModel, contract_docs

ANSWER = "## Parties\n\n- Acme Corporation\n- Globex Limited"
SCENARIO_B = [
    {"role": "user", "content": "What is this case about?"},
    {"role": "assistant", "content": "It concerns a contract dispute."},
    {"role": "user", "content": "Who are the parties?"},
]


def _orchestrator(llm, index, k=4):
    return PipelineOrchestrator(ServiceClients(llm=llm, vector_index=index, retriever_k=k))


class TestPipelineRunStateMachine(unittest.TestCase):
    def test_sequential_transitions(self):
        run = PipelineRun(chat_id="doc-1")
        for state in (
            PipelineState.REWRITING,
            PipelineState.RETRIEVING,
            PipelineState.SYNTHESIZING,
            PipelineState.STREAMING,
            PipelineState.COMPLETED,
        ):
            run.advance(state)
        self.assertEqual(run.state, PipelineState.COMPLETED)

    def test_skipping_a_state_is_rejected(self):
        run = PipelineRun(chat_id="doc-1")
        with self.assertRaises(RuntimeError):
            run.advance(PipelineState.RETRIEVING)

    def test_failed_is_terminal(self):
        run = PipelineRun(chat_id="doc-1")
        run.advance(PipelineState.REWRITING)
        run.fail(ConnectionError("down"))
        self.assertEqual(run.state, PipelineState.FAILED)
        with self.assertRaises(RuntimeError):
            run.advance(PipelineState.RETRIEVING)


class TestPipelineOrchestrator(unittest.IsolatedAsyncioTestCase):
    async def test_follow_up_question_uses_rewritten_query_and_full_manifest(self):
        llm = RecordingChatModel(responses=["contract dispute parties Acme Globex", ANSWER])
        index = FakeVectorIndex({"doc-1": contract_docs()})
        result = await _orchestrator(llm, index).run(SCENARIO_B, "doc-1")

        self.assertEqual(result.run.state, PipelineState.STREAMING)
        self.assertEqual(index.calls, ["doc-1"])
        query = index.stores["doc-1"].queries[0][0]
        self.assertEqual(query, "contract dispute parties Acme Globex")
        self.assertNotEqual(query, "Who are the parties?")

        self.assertEqual(result.turn_index, 3)
        self.assertEqual(len(result.source_manifest), 3)
        for chunk, entry in zip(contract_docs(), result.source_manifest):
            self.assertEqual(entry.excerpt, chunk.page_content[:50] + "...")
        self.assertEqual(result.headers["x-message-index"], "3")
        self.assertEqual(len(decode_manifest(result.headers["x-sources"])), 3)

        answer = await result.stream.read_all()
        self.assertEqual(answer, ANSWER)
        self.assertEqual(
            result.run.history,
            [
                PipelineState.RECEIVED,
                PipelineState.REWRITING,
                PipelineState.RETRIEVING,
                PipelineState.SYNTHESIZING,
                PipelineState.STREAMING,
                PipelineState.COMPLETED,
            ],
        )

    async def test_history_order_is_identical_in_both_prompts(self):
        llm = RecordingChatModel(responses=["contract parties", ANSWER])
        result = await _orchestrator(llm, FakeVectorIndex({"doc-1": contract_docs()})).run(SCENARIO_B, "doc-1")
        await result.stream.read_all()

        rewrite_messages, answer_messages = llm.calls
        self.assertEqual([m.content for m in rewrite_messages[:3]], [t["content"] for t in SCENARIO_B])
        self.assertEqual([m.content for m in answer_messages[1:]], [t["content"] for t in SCENARIO_B])

    async def test_first_question_without_context_reports_no_relevant_context(self):
        llm = RecordingChatModel(responses=[ANSWER])
        index = FakeVectorIndex({"doc-empty": []})
        question = [{"role": "user", "content": "What is the termination clause?"}]
        result = await _orchestrator(llm, index).run(question, "doc-empty")

        self.assertEqual(index.stores["doc-empty"].queries[0][0], "What is the termination clause?")
        self.assertEqual(result.turn_index, 1)
        self.assertEqual(result.source_manifest, ())
        self.assertEqual(await result.stream.read_all(), NO_CONTEXT_ANSWER)
        self.assertEqual(llm.calls, [])

    async def test_manifest_comes_from_capture_not_synthesis_input(self):
        llm = RecordingChatModel(responses=[ANSWER])
        docs = contract_docs() + [Document(page_content="Fourth chunk about fees.", metadata={"page": 12})]
        result = await _orchestrator(llm, FakeVectorIndex({"doc-1": docs}), k=4).run(
            [{"role": "user", "content": "Fees?"}], "doc-1"
        )
        await result.stream.read_all()
        self.assertEqual(len(result.source_manifest), len(result.capture.chunks))
        self.assertEqual([dict(e.metadata) for e in result.source_manifest], [d.metadata for d in docs])

    async def test_retrieval_failure_stops_before_synthesis(self):
        llm = RecordingChatModel(responses=[ANSWER])
        orchestrator = _orchestrator(llm, FakeVectorIndex(fail=ConnectionError("connection refused")))
        with self.assertRaises(RetrievalError):
            await orchestrator.run([{"role": "user", "content": "Who are the parties?"}], "doc-1")
        self.assertEqual(llm.calls, [])

    async def test_unreachable_model_fails_before_streaming(self):
        orchestrator = _orchestrator(UnreachableChatModel(), FakeVectorIndex({"doc-1": contract_docs()}))
        with self.assertRaises(UpstreamModelError):
            await orchestrator.run([{"role": "user", "content": "Who are the parties?"}], "doc-1")

    async def test_mid_stream_failure_marks_run_failed(self):
        llm = RecordingChatModel(responses=[ANSWER], error_on_chunk_number=6)
        result = await _orchestrator(llm, FakeVectorIndex({"doc-1": contract_docs()})).run(
            [{"role": "user", "content": "Who are the parties?"}], "doc-1"
        )
        received = []
        with self.assertRaises(UpstreamModelError):
            async for fragment in result.stream:
                received.append(fragment)
        self.assertEqual("".join(received), ANSWER[:6])
        self.assertEqual(result.run.state, PipelineState.FAILED)

    async def test_unserializable_metadata_fails_before_synthesis(self):
        llm = RecordingChatModel(responses=[ANSWER])
        docs = [Document(page_content="Clause text.", metadata={"blob": object()})]
        with self.assertRaises(SerializationError):
            await _orchestrator(llm, FakeVectorIndex({"doc-1": docs})).run(
                [{"role": "user", "content": "Clause?"}], "doc-1"
            )
        self.assertEqual(llm.calls, [])

    async def test_validation_happens_before_any_external_call(self):
        llm = RecordingChatModel(responses=[ANSWER])
        index = FakeVectorIndex({"doc-1": contract_docs()})
        orchestrator = _orchestrator(llm, index)
        with self.assertRaises(ValidationError):
            await orchestrator.run([], "doc-1")
        with self.assertRaises(ValidationError):
            await orchestrator.run([{"role": "user", "content": "Hi"}], "")
        self.assertEqual(index.calls, [])
        self.assertEqual(llm.calls, [])

    async def test_blank_question_reaches_no_external_service(self):
        llm = RecordingChatModel(responses=[ANSWER])
        index = FakeVectorIndex({"doc-1": contract_docs()})
        orchestrator = _orchestrator(llm, index)
        for content in ("", "   "):
            with self.assertRaises(ValidationError):
                await orchestrator.run([{"role": "user", "content": content}], "doc-1")
        self.assertEqual(index.calls, [])
        self.assertEqual(index.stores["doc-1"].queries, [])
        self.assertEqual(llm.calls, [])


if __name__ == "__main__":
    unittest.main()
