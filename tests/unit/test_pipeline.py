"""Unit tests for the per-message ingestion pipeline."""

from __future__ import annotations

import pytest
from doubles import T0, make_message, make_rule, transaction_reply

from mailwatch.constants import ERROR_LOW_CONFIDENCE, ERROR_NO_MATCHING_RULE
from mailwatch.errors import IngestionError, PermanentError, TransientError
from mailwatch.extraction.invoker import ExtractionInvoker
from mailwatch.models import SourceMessage, TenantContext
from mailwatch.pipeline import (
    IngestionOutcome,
    IngestionPipeline,
    IngestionResult,
    IngestionSummary,
)

CTX = TenantContext(tenant_id="tenant-1", access_token="tok", lifecycle_id="life-1")


@pytest.fixture
def make_pipeline(store, gateway, extraction, substrate):
    def _make(**kwargs) -> IngestionPipeline:
        invoker = ExtractionInvoker(extraction, executor=substrate)
        return IngestionPipeline(
            store, gateway, invoker, executor=substrate, clock=substrate.now, **kwargs
        )

    return _make


@pytest.fixture
async def rule(store):
    return await store.save_rule(make_rule())


def _stored(store, message_id="m-1") -> SourceMessage:
    return store.messages[("tenant-1", message_id)]


class TestConstruction:
    """Tests for IngestionPipeline.__init__."""

    @pytest.mark.parametrize("threshold", [-0.1, 1.5])
    def test_threshold_must_be_probability(self, make_pipeline, threshold):
        with pytest.raises(ValueError, match="between 0 and 1"):
            make_pipeline(confidence_threshold=threshold)

    def test_threshold_is_injected(self, make_pipeline):
        assert make_pipeline(confidence_threshold=0.5).confidence_threshold == 0.5


class TestProcessed:
    """Tests for the successful path."""

    @pytest.mark.asyncio
    async def test_message_processed(self, make_pipeline, store, gateway, rule):
        pipeline = make_pipeline()

        result = await pipeline.ingest(CTX, make_message())

        assert result.outcome is IngestionOutcome.PROCESSED
        assert result.rule_id == rule.id
        assert result.confidence == 0.95
        stored = _stored(store)
        assert stored.is_processed
        assert stored.result_id == result.result_id
        assert stored.matched_rule_id == rule.id
        assert stored.lifecycle_id == "life-1"
        assert stored.processed_at == T0
        extracted = store.results[("tenant-1", "m-1")]
        assert extracted.merchant == "Corner Grocer"
        assert extracted.bank_name == "Acme Bank"
        assert extracted.raw_output["currency"] == "usd"
        assert gateway.labels == [("m-1", "mailwatch/processed")]
        stats = store.rules[rule.id]
        assert (stats.match_count, stats.success_count, stats.success_rate) == (1, 1, 1.0)

    @pytest.mark.asyncio
    async def test_custom_label(self, make_pipeline, gateway, rule):
        await make_pipeline(processed_label="Finance/Imported").ingest(CTX, make_message())
        assert gateway.labels == [("m-1", "Finance/Imported")]

    @pytest.mark.asyncio
    async def test_label_failure_does_not_block(self, make_pipeline, store, gateway, rule):
        gateway.fail("label", RuntimeError("labels API down"))

        result = await make_pipeline().ingest(CTX, make_message())

        assert result.outcome is IngestionOutcome.PROCESSED
        assert _stored(store).is_processed


class TestDeduplication:
    """Tests for exactly-once behaviour."""

    @pytest.mark.asyncio
    async def test_same_message_twice(self, make_pipeline, store, extraction, rule):
        pipeline = make_pipeline()

        first = await pipeline.ingest(CTX, make_message())
        second = await pipeline.ingest(CTX, make_message())

        assert first.outcome is IngestionOutcome.PROCESSED
        assert second.outcome is IngestionOutcome.DUPLICATE
        assert len(store.messages) == 1
        assert len(store.results) == 1
        assert len(extraction.prompts) == 1

    @pytest.mark.asyncio
    async def test_failed_message_not_retried(self, make_pipeline, store, extraction):
        pipeline = make_pipeline()

        first = await pipeline.ingest(CTX, make_message())
        second = await pipeline.ingest(CTX, make_message())

        assert first.outcome is IngestionOutcome.NO_MATCH
        assert second.outcome is IngestionOutcome.DUPLICATE

    @pytest.mark.asyncio
    async def test_same_id_for_other_tenant_is_separate(self, make_pipeline, store, rule):
        other = TenantContext(tenant_id="tenant-2", access_token="tok2")
        pipeline = make_pipeline()

        await pipeline.ingest(CTX, make_message())
        result = await pipeline.ingest(other, make_message())

        assert result.outcome is IngestionOutcome.NO_MATCH
        assert ("tenant-2", "m-1") in store.messages

    @pytest.mark.asyncio
    async def test_crash_before_close_is_resumed(self, make_pipeline, store, extraction, rule):
        store.fail("mark_message_processed", *(TransientError("db down") for _ in range(5)))
        pipeline = make_pipeline()

        with pytest.raises(IngestionError):
            await pipeline.ingest(CTX, make_message())
        assert len(store.results) == 1
        assert not _stored(store).is_terminal

        replay = await pipeline.ingest(CTX, make_message())

        assert replay.outcome is IngestionOutcome.PROCESSED
        assert replay.result_id == store.results[("tenant-1", "m-1")].id
        assert len(store.results) == 1
        assert _stored(store).is_processed
        assert store.rules[rule.id].match_count == 1

    @pytest.mark.asyncio
    async def test_unrecordable_message_raises(self, make_pipeline, store):
        store.fail("get_source_message", PermanentError("connection refused"))

        with pytest.raises(IngestionError, match="could not record message m-1"):
            await make_pipeline().ingest(CTX, make_message())


class TestRejections:
    """Tests for terminal non-processed outcomes."""

    @pytest.mark.asyncio
    async def test_no_matching_rule(self, make_pipeline, store, extraction):
        await store.save_rule(make_rule(from_addresses=["alerts@otherbank.com"]))

        result = await make_pipeline().ingest(CTX, make_message())

        assert result.outcome is IngestionOutcome.NO_MATCH
        assert result.error == ERROR_NO_MATCHING_RULE
        stored = _stored(store)
        assert stored.processing_error == ERROR_NO_MATCHING_RULE
        assert stored.body.startswith("A purchase")
        assert not stored.is_processed
        assert extraction.prompts == []

    @pytest.mark.asyncio
    async def test_confidence_at_threshold_accepted(self, make_pipeline, store, extraction, rule):
        extraction.default = transaction_reply(confidence=0.78)

        result = await make_pipeline(confidence_threshold=0.78).ingest(CTX, make_message())

        assert result.outcome is IngestionOutcome.PROCESSED
        assert len(store.results) == 1

    @pytest.mark.asyncio
    async def test_confidence_below_threshold_rejected(
        self, make_pipeline, store, extraction, rule
    ):
        extraction.default = transaction_reply(confidence=0.77)

        result = await make_pipeline(confidence_threshold=0.78).ingest(CTX, make_message())

        assert result.outcome is IngestionOutcome.LOW_CONFIDENCE
        assert result.confidence == 0.77
        assert store.results == {}
        stored = _stored(store)
        assert stored.processing_error == ERROR_LOW_CONFIDENCE
        assert stored.confidence == 0.77
        assert stored.matched_rule_id == rule.id
        assert store.rules[rule.id].fail_count == 1

    @pytest.mark.asyncio
    async def test_extraction_failure(self, make_pipeline, store, extraction, rule):
        extraction.default = {"merchant": "?"}

        result = await make_pipeline().ingest(CTX, make_message())

        assert result.outcome is IngestionOutcome.EXTRACTION_FAILED
        assert result.confidence == 0.0
        assert result.error.startswith("extraction failed: invalid extraction")
        assert _stored(store).confidence == 0.0
        assert store.results == {}
        assert store.rules[rule.id].success_rate == 0.0

    @pytest.mark.asyncio
    async def test_fetch_failed_placeholder(self, make_pipeline, store):
        placeholder = SourceMessage.fetch_failed("tenant-1", "m-9", "Gmail API error 404")

        result = await make_pipeline().ingest(CTX, placeholder)

        assert result.outcome is IngestionOutcome.FETCH_FAILED
        stored = _stored(store, "m-9")
        assert stored.fetch_error == "Gmail API error 404"
        assert stored.processing_error == "fetch failed: Gmail API error 404"
        assert "list_active_rules" not in store.calls

    @pytest.mark.asyncio
    async def test_unexpected_step_error_closes_message(self, make_pipeline, store):
        store.fail("list_active_rules", PermanentError("bad rule row"))

        result = await make_pipeline().ingest(CTX, make_message())

        assert result.outcome is IngestionOutcome.FAILED
        assert _stored(store).processing_error == "processing error: bad rule row"


class TestRuleStatistics:
    """Tests for the moving success rate."""

    @pytest.mark.asyncio
    async def test_success_then_failure(self, make_pipeline, store, extraction, rule):
        pipeline = make_pipeline()
        extraction.replies.extend([transaction_reply(), transaction_reply(confidence=0.1)])

        await pipeline.ingest(CTX, make_message("m-1"))
        await pipeline.ingest(CTX, make_message("m-2"))

        stats = store.rules[rule.id]
        assert stats.match_count == 2
        assert stats.success_count == 1
        assert stats.fail_count == 1
        assert stats.success_rate == pytest.approx(0.8)
        assert stats.last_matched_at == T0


class TestIngestMany:
    """Tests for ingest_many and IngestionSummary."""

    @pytest.mark.asyncio
    async def test_summary_counts(self, make_pipeline, extraction, rule):
        extraction.replies.extend([transaction_reply(), transaction_reply(confidence=0.2)])
        messages = [
            make_message("m-1"),
            make_message("m-2"),
            make_message("m-3", from_address="friend@example.com"),
            make_message("m-1"),
        ]

        summary = await make_pipeline().ingest_many(CTX, messages)

        assert summary.total == 4
        assert summary.counts == {
            "processed": 1,
            "low_confidence": 1,
            "no_match": 1,
            "duplicate": 1,
        }
        assert summary.count(IngestionOutcome.DUPLICATE) == 1

    def test_summary_to_dict(self):
        summary = IngestionSummary()
        summary.add(IngestionResult("m-1", IngestionOutcome.PROCESSED, result_id=3))
        assert summary.to_dict() == {"total": 1, "counts": {"processed": 1}}
        assert summary.results[0].to_dict()["outcome"] == "processed"
