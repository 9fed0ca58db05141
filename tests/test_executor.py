from classifier.lexicon import LEXICON_TABLE
from classifier.provider import ProviderError
from classifier.rate_limiter import RateLimiter
from classifier.taxonomy import ClassificationResult, Source
from common.flag_store import KILL_FLAG_KEY
from fakes import ai_answer, seed_tokens
from jobs.executor import StopSignal
from jobs.models import ChunkStatus, JobScope, JobStatus, JobType
from jobs.work_sources import TOKENS_TABLE

GAUCHO = JobScope(corpus_id="gaucho")


def _start(stack, count=10, job_type=JobType.ANNOTATE, scope=GAUCHO):
    if job_type is JobType.ANNOTATE:
        seed_tokens(stack.client, "gaucho", count)
    return stack.service.start(job_type, scope)


def _seed_words(stack, words):
    stack.client.seed(
        TOKENS_TABLE,
        [
            {
                "id": index,
                "corpus_id": "gaucho",
                "word": word,
                "pos": None,
                "song_id": "song-1",
                "artist_id": "artist-1",
                "context": f"verso com {word} no meio",
            }
            for index, word in enumerate(words, start=1)
        ],
    )


def test_chunk_classifies_and_advances_cursor(make_stack):
    stack = make_stack(CHUNK_SIZE=4)
    job = _start(stack)

    result = stack.executor.run_chunk(JobType.ANNOTATE, job.id)

    assert result.status is ChunkStatus.ADVANCED
    assert result.processed == 4
    assert result.succeeded == 4
    assert result.cursor == 4
    saved = stack.service.get(JobType.ANNOTATE, job.id)
    assert (saved.processed, saved.cursor, saved.status) == (4, 4, JobStatus.RUNNING)
    assert len(stack.client.table("semantic_disambiguation_cache")) == 4


def test_resumed_job_continues_after_cursor(make_stack):
    stack = make_stack(CHUNK_SIZE=40)
    first = _start(stack, count=100)

    stack.executor.run_chunk(JobType.ANNOTATE, first.id)
    orphan = stack.service.get(JobType.ANNOTATE, first.id)
    resumed = stack.service.start(JobType.ANNOTATE, GAUCHO, resume_from=orphan)

    assert resumed.processed == 40
    assert resumed.remaining == 60
    assert stack.service.get(JobType.ANNOTATE, first.id).status is JobStatus.CANCELLED

    assert stack.executor.run_chunk(JobType.ANNOTATE, resumed.id).status is ChunkStatus.ADVANCED
    last = stack.executor.run_chunk(JobType.ANNOTATE, resumed.id)

    assert last.status is ChunkStatus.COMPLETED
    assert last.processed == 20
    done = stack.service.get(JobType.ANNOTATE, resumed.id)
    assert (done.processed, done.succeeded, done.cursor) == (100, 100, 100)
    # Every token reached the AI tier exactly once across both jobs.
    assert stack.provider.classify_word.call_count == 100
    words = [call.args[0] for call in stack.provider.classify_word.call_args_list]
    assert len(set(words)) == 100


def test_deferred_items_stop_the_cursor(make_stack):
    stack = make_stack(limiter=RateLimiter(max_requests=3, window_ms=60000), AI_MAX_WAIT_SECONDS=0)
    job = _start(stack)

    first = stack.executor.run_chunk(JobType.ANNOTATE, job.id)
    second = stack.executor.run_chunk(JobType.ANNOTATE, job.id)

    assert first.status is ChunkStatus.ADVANCED
    assert first.processed == 3
    assert first.deferred == 7
    assert first.cursor == 3
    assert second.status is ChunkStatus.DEFERRED
    assert second.processed == 0
    saved = stack.service.get(JobType.ANNOTATE, job.id)
    assert (saved.processed, saved.cursor, saved.status) == (3, 3, JobStatus.RUNNING)
    assert stack.provider.classify_word.call_count == 3


def test_kill_switch_cancels_before_any_work(make_stack):
    stack = make_stack()
    job = _start(stack)
    stack.flags.values[KILL_FLAG_KEY] = "true"

    result = stack.executor.run_chunk(JobType.ANNOTATE, job.id)

    assert result.status is ChunkStatus.CANCELLED
    stack.provider.classify_word.assert_not_called()
    cancelled = stack.service.get(JobType.ANNOTATE, job.id)
    assert cancelled.status is JobStatus.CANCELLED
    assert cancelled.message == "Cancelled by emergency kill switch"
    assert stack.client.count_calls("select", TOKENS_TABLE) == 0


def test_cancelling_flag_is_honoured(make_stack):
    stack = make_stack()
    job = _start(stack)
    stack.client.table(JobType.ANNOTATE.table)[0]["is_cancelling"] = True

    result = stack.executor.run_chunk(JobType.ANNOTATE, job.id)

    assert result.status is ChunkStatus.CANCELLED
    assert stack.service.get(JobType.ANNOTATE, job.id).status is JobStatus.CANCELLED
    stack.provider.classify_word.assert_not_called()


def test_paused_and_unknown_jobs_are_not_runnable(make_stack):
    stack = make_stack()
    job = _start(stack)
    stack.service.pause(JobType.ANNOTATE, job.id)

    assert stack.executor.run_chunk(JobType.ANNOTATE, job.id).status is ChunkStatus.NOT_RUNNABLE
    assert stack.executor.run_chunk(JobType.ANNOTATE, "missing").status is ChunkStatus.NOT_RUNNABLE


def test_cancel_during_chunk_discards_progress(make_stack):
    stack = make_stack()
    job = _start(stack)

    def classify_word(word, context="", secondary=False, parent_code=None):
        if stack.provider.classify_word.call_count == 1:
            stack.service.cancel(JobType.ANNOTATE, job.id, reason="operator")
        return ai_answer("AB.01")

    stack.provider.classify_word.side_effect = classify_word

    result = stack.executor.run_chunk(JobType.ANNOTATE, job.id)

    assert result.status is ChunkStatus.CANCELLED
    saved = stack.service.get(JobType.ANNOTATE, job.id)
    assert saved.status is JobStatus.CANCELLED
    assert saved.processed == 0
    assert saved.cursor is None


def test_failed_items_are_counted_not_fatal(make_stack):
    stack = make_stack()
    job = _start(stack, count=5)

    def classify_word(word, context="", secondary=False, parent_code=None):
        if word == "palavra2":
            raise ProviderError("timeout")
        return ai_answer("AB.01")

    stack.provider.classify_word.side_effect = classify_word

    result = stack.executor.run_chunk(JobType.ANNOTATE, job.id)

    assert result.status is ChunkStatus.COMPLETED
    assert (result.processed, result.succeeded, result.errors) == (5, 4, 1)
    saved = stack.service.get(JobType.ANNOTATE, job.id)
    assert saved.errors == 1
    assert saved.succeeded == 4


def test_repeated_datastore_failures_error_the_job(make_stack):
    stack = make_stack(MAX_CHUNK_FAILURES=3)
    job = _start(stack)
    stack.client.fail("select", TOKENS_TABLE, times=3)

    statuses = [stack.executor.run_chunk(JobType.ANNOTATE, job.id).status for _ in range(3)]

    assert statuses == [ChunkStatus.RETRY, ChunkStatus.RETRY, ChunkStatus.ERRORED]
    errored = stack.service.get(JobType.ANNOTATE, job.id)
    assert errored.status is JobStatus.ERRORED
    assert errored.cursor is None
    assert "3 chunks in a row" in errored.message


def test_successful_chunk_resets_failure_count(make_stack):
    stack = make_stack(MAX_CHUNK_FAILURES=2, CHUNK_SIZE=2)
    job = _start(stack)
    stack.client.fail("select", TOKENS_TABLE, times=1)

    assert stack.executor.run_chunk(JobType.ANNOTATE, job.id).status is ChunkStatus.RETRY
    assert stack.executor.run_chunk(JobType.ANNOTATE, job.id).status is ChunkStatus.ADVANCED
    stack.client.fail("select", TOKENS_TABLE, times=1)
    assert stack.executor.run_chunk(JobType.ANNOTATE, job.id).status is ChunkStatus.RETRY


def test_exhausted_work_completes_the_job(make_stack):
    stack = make_stack()
    job = _start(stack)
    stack.client.tables[TOKENS_TABLE] = stack.client.table(TOKENS_TABLE)[:6]

    result = stack.executor.run_chunk(JobType.ANNOTATE, job.id)

    assert result.status is ChunkStatus.COMPLETED
    done = stack.service.get(JobType.ANNOTATE, job.id)
    assert done.processed == 6
    assert done.message == "Work exhausted after 6 of 10 items"


def test_repeated_unclassified_word_reaches_the_ai_once(make_stack):
    stack = make_stack()
    _seed_words(stack, ["xyz123"] * 10)
    stack.provider.classify_word.return_value = ai_answer("NC", confidence=0.0)
    job = stack.service.start(JobType.ANNOTATE, GAUCHO)

    result = stack.executor.run_chunk(JobType.ANNOTATE, job.id)

    assert result.status is ChunkStatus.COMPLETED
    assert (result.processed, result.unclassified, result.errors) == (10, 10, 0)
    assert stack.provider.classify_word.call_count == 1


def test_kill_switch_with_datastore_down_retries_without_work(make_stack):
    stack = make_stack()
    job = _start(stack)
    stack.flags.values[KILL_FLAG_KEY] = "true"
    stack.client.fail("update", JobType.ANNOTATE.table, times=1)

    first = stack.executor.run_chunk(JobType.ANNOTATE, job.id)
    second = stack.executor.run_chunk(JobType.ANNOTATE, job.id)

    assert first.status is ChunkStatus.RETRY
    assert second.status is ChunkStatus.CANCELLED
    assert stack.client.count_calls("select", TOKENS_TABLE) == 0
    stack.provider.classify_word.assert_not_called()
    assert stack.service.get(JobType.ANNOTATE, job.id).status is JobStatus.CANCELLED


def test_cancelling_flag_with_datastore_down_is_a_chunk_failure(make_stack):
    stack = make_stack(MAX_CHUNK_FAILURES=3)
    job = _start(stack)
    stack.client.table(JobType.ANNOTATE.table)[0]["is_cancelling"] = True
    stack.client.fail("update", JobType.ANNOTATE.table, times=1)

    result = stack.executor.run_chunk(JobType.ANNOTATE, job.id)

    assert result.status is ChunkStatus.RETRY
    assert "injected" in result.message
    stack.provider.classify_word.assert_not_called()


def test_completed_chunk_is_not_reported_cancelled_by_late_kill(make_stack, monkeypatch):
    stack = make_stack()
    stack.client.seed(LEXICON_TABLE, [{"word": "gaucho", "n1": "SH"}])
    _seed_words(stack, ["gaucho", "gaucho"])
    job = stack.service.start(JobType.ANNOTATE, GAUCHO)
    advance = stack.repository.advance

    def advance_then_kill(*args, **kwargs):
        saved = advance(*args, **kwargs)
        stack.flags.values[KILL_FLAG_KEY] = "true"
        return saved

    monkeypatch.setattr(stack.repository, "advance", advance_then_kill)

    result = stack.executor.run_chunk(JobType.ANNOTATE, job.id)

    assert result.status is ChunkStatus.COMPLETED
    assert stack.service.get(JobType.ANNOTATE, job.id).status is JobStatus.COMPLETED


def test_refine_job_deepens_shallow_entries(make_stack):
    stack = make_stack()
    seed_tokens(stack.client, "gaucho", 1, word="gauderio")
    cache = stack.classifier.cache
    cache.upsert(ClassificationResult.from_code("gauderio1", "AB", 0.8, Source.AI_PRIMARY))
    cache.upsert(ClassificationResult.from_code("querencia", "SE", 0.8, Source.MANUAL))
    cache.upsert(ClassificationResult.from_code("bombacha", "CC.01", 0.9, Source.AI_PRIMARY))
    job = stack.service.start(JobType.REFINE, JobScope())

    result = stack.executor.run_chunk(JobType.REFINE, job.id)

    assert job.total == 1
    assert result.status is ChunkStatus.COMPLETED
    assert (result.improved, result.succeeded) == (1, 1)
    stack.provider.classify_word.assert_called_once_with(
        "gauderio1",
        context="verso com gauderio1 no meio",
        secondary=False,
        parent_code="AB",
    )
    assert cache.get("gauderio1").code == "AB.01"


def test_reprocess_job_improves_unclassified_entries(make_stack):
    stack = make_stack()
    cache = stack.classifier.cache
    cache.upsert(ClassificationResult.unclassified("xirua"))
    cache.upsert(ClassificationResult.from_code("pealo", "AB.01", 0.95, Source.AI_PRIMARY))
    job = stack.service.start(JobType.REPROCESS)

    result = stack.executor.run_chunk(JobType.REPROCESS, job.id)

    assert job.total == 1
    assert result.status is ChunkStatus.COMPLETED
    assert (result.improved, result.unchanged) == (1, 0)
    entry = cache.get("xirua")
    assert entry.code == "AB.01"
    assert entry.confidence == 0.9


def test_reprocess_job_counts_unchanged_entries(make_stack):
    stack = make_stack()
    stack.provider.classify_word.return_value = ai_answer("NC", confidence=0.0)
    stack.classifier.cache.upsert(ClassificationResult.unclassified("xirua"))
    job = stack.service.start(JobType.REPROCESS)

    result = stack.executor.run_chunk(JobType.REPROCESS, job.id)

    assert (result.improved, result.unchanged, result.unclassified) == (0, 1, 0)


def test_stop_signal_is_throttled_and_latches():
    answers = iter([False, True])
    calls = []
    now = [0.0]

    def check():
        calls.append(now[0])
        return next(answers)

    stop = StopSignal(check, interval=1.0, clock=lambda: now[0])

    assert stop() is False
    now[0] = 0.5
    assert stop() is False
    now[0] = 1.5
    assert stop() is True
    assert stop() is True
    assert calls == [0.0, 1.5]
