import io
import unittest
from unittest.mock import patch

from rich.console import Console
from rich.table import Table

from docchat import cli
from docchat.clients import ServiceClients
from docchat.multiplexer import build_manifest
from docchat.pipeline import PipelineOrchestrator
from docchat.retrieval import RetrievedChunk

from fakes import FakeVectorIndex, RecordingChatModel, contract_docs


class TestCliRendering(unittest.TestCase):
    def test_format_sources_empty(self):
        self.assertEqual(cli.format_sources(()), "No sources found.")

    def test_format_sources_lists_entries_in_order(self):
        manifest = build_manifest(
            [
                RetrievedChunk("Acme Corporation and Globex Limited", {"source": "/docs/contract.pdf", "page": 1}),
                RetrievedChunk("Termination with notice", {"page": 7}),
            ]
        )
        table = cli.format_sources(manifest)
        self.assertIsInstance(table, Table)
        self.assertEqual(table.row_count, 2)
        out = io.StringIO()
        Console(file=out, width=120).print(table)
        rendered = out.getvalue()
        self.assertIn("contract.pdf", rendered)
        self.assertLess(rendered.index("Acme"), rendered.index("Termination"))


class TestCliAsk(unittest.IsolatedAsyncioTestCase):
    async def test_ask_streams_answer_and_prints_sources(self):
        llm = RecordingChatModel(responses=["Acme and Globex are the parties."])
        orchestrator = PipelineOrchestrator(
            ServiceClients(llm=llm, vector_index=FakeVectorIndex({"doc-1": contract_docs()}))
        )
        out = io.StringIO()
        with patch.object(cli, "console", Console(file=out, width=120)):
            answer = await cli.ask(orchestrator, [{"role": "user", "content": "Who are the parties?"}], "doc-1")
        self.assertEqual(answer, "Acme and Globex are the parties.")
        self.assertIn("Sources", out.getvalue())

    async def test_ask_reports_pipeline_errors(self):
        orchestrator = PipelineOrchestrator(
            ServiceClients(llm=RecordingChatModel(responses=["x"]), vector_index=FakeVectorIndex({}))
        )
        out = io.StringIO()
        with patch.object(cli, "console", Console(file=out, width=120)):
            answer = await cli.ask(orchestrator, [{"role": "user", "content": "Who?"}], "doc-missing")
        self.assertIsNone(answer)
        self.assertIn("retrieval_error", out.getvalue())

    async def test_cut_off_answer_is_not_returned(self):
        llm = RecordingChatModel(responses=["Acme and Globex are the parties."], error_on_chunk_number=5)
        orchestrator = PipelineOrchestrator(
            ServiceClients(llm=llm, vector_index=FakeVectorIndex({"doc-1": contract_docs()}))
        )
        out = io.StringIO()
        with patch.object(cli, "console", Console(file=out, width=120)):
            answer = await cli.ask(orchestrator, [{"role": "user", "content": "Who?"}], "doc-1")
        self.assertIsNone(answer)
        self.assertIn("cut off", out.getvalue())


if __name__ == "__main__":
    unittest.main()
