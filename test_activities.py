"""
Temporal Activity Tests

Runs the ingestion activities inside temporalio's ActivityEnvironment
against a temporary database. The workflow itself is covered by its
retry configuration: every non-retryable error name must be a real
exception class.
"""

import asyncio
import builtins
import os
import tempfile

import pytest
from temporalio.testing import ActivityEnvironment

import core.errors
from activities.ingest import (
    AnalyzeUploadInput,
    CommitUploadInput,
    analyze_invoice_upload,
    commit_invoice_upload,
)
from core.errors import FormatError
from storage.db import init_db
from storage.models import Order
from storage.orders import save_order
from workflows.invoice_upload_workflow import NON_RETRYABLE_ERRORS, InvoiceUploadInput


@pytest.fixture
def db_path(monkeypatch):
    """Create a temporary database with one order."""
    monkeypatch.delenv("INVOICE_AUDIT_DIR", raising=False)
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        path = f.name
    init_db(path)
    save_order(Order(id="ord-1", tracking_numbers=["1111111111"]), path)
    yield path
    try:
        os.unlink(path)
    except PermissionError:
        pass


@pytest.fixture
def invoice_file(tmp_path):
    path = tmp_path / "CBGR_100.csv"
    path.write_text("AWB,Amount\n1111111111,5.00\n2222222222,3.00\n")
    return path


def run(fn, arg):
    return asyncio.run(ActivityEnvironment().run(fn, arg))


class TestAnalyzeActivity:
    """analyze_invoice_upload"""

    def test_analyze(self, db_path, invoice_file):
        output = run(analyze_invoice_upload, AnalyzeUploadInput(
            file_path=str(invoice_file),
            carrier="dhl",
            upload_mode="overwrite_all",
            db_path=db_path,
        ))

        assert output.file_name == "CBGR_100.csv"
        assert output.needs_manual_mapping is False
        assert output.totals["to_create"] == 1
        assert output.totals["unmatched"] == 1
        assert [r["action"] for r in output.records] == ["create", "skip"]
        assert output.records[0]["shipping_cost"] == "5.00"

    def test_needs_mapping(self, db_path, tmp_path):
        path = tmp_path / "odd.csv"
        path.write_text("Foo,Bar\n1,2\n")

        output = run(analyze_invoice_upload, AnalyzeUploadInput(
            file_path=str(path), carrier="dhl", upload_mode="overwrite_all", db_path=db_path,
        ))

        assert output.needs_manual_mapping is True
        assert output.headers == ["Foo", "Bar"]
        assert output.records == []
        assert output.totals == {}

    def test_bad_file_raises(self, db_path, tmp_path):
        path = tmp_path / "broken.pdf"
        path.write_bytes(b"%PDF-1.4 this is not really a pdf")

        with pytest.raises(FormatError):
            run(analyze_invoice_upload, AnalyzeUploadInput(
                file_path=str(path), carrier="dhl", upload_mode="overwrite_all", db_path=db_path,
            ))


class TestCommitActivity:
    """commit_invoice_upload"""

    def test_commit_then_retry(self, db_path, invoice_file):
        analysis = run(analyze_invoice_upload, AnalyzeUploadInput(
            file_path=str(invoice_file), carrier="dhl", upload_mode="overwrite_all", db_path=db_path,
        ))
        commit_input = CommitUploadInput(
            carrier="dhl",
            upload_mode="overwrite_all",
            records=analysis.records,
            file_name=analysis.file_name,
            invoice_number="CBGR_100",
            workflow_id="invoice-upload-test",
            db_path=db_path,
        )

        first = run(commit_invoice_upload, commit_input)
        assert first.replayed is False
        assert first.counts == {
            "total": 2, "created": 1, "updated": 0, "added": 0,
            "skipped": 1, "blocked": 0, "errored": 0, "unmatched": 1,
        }
        assert [o["outcome"] for o in first.outcomes] == ["created", "skipped"]

        retried = run(commit_invoice_upload, commit_input)
        assert retried.replayed is True
        assert retried.upload_key == first.upload_key
        assert retried.counts == first.counts


class TestWorkflowConfiguration:
    """Static workflow settings."""

    def test_non_retryable_errors_exist(self):
        for name in NON_RETRYABLE_ERRORS:
            assert hasattr(core.errors, name) or hasattr(builtins, name), name

    def test_input_defaults(self):
        workflow_input = InvoiceUploadInput(file_path="a.csv", carrier="dhl", upload_mode="add_only")
        assert workflow_input.preview_only is False
        assert workflow_input.actor == "workflow"
