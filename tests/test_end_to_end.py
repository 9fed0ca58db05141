"""A corpus annotation run through every tier, over in-memory stores."""

from classifier.lexicon import LEXICON_TABLE
from classifier.taxonomy import UNCLASSIFIED
from fakes import ai_answer
from jobs.models import ChunkStatus, JobStatus, JobType
from jobs.work_sources import TOKENS_TABLE

WORDS = ["chimarrão", "mate amargo", "gauchinho", "xyz123"]


def classify_word(word, context="", secondary=False, parent_code=None):
    if word == "mate amargo":
        return ai_answer("AL.02", confidence=0.88)
    return ai_answer(UNCLASSIFIED, confidence=0.0)


def _seed(stack):
    stack.client.seed(
        LEXICON_TABLE,
        [
            {"word": "gaucho", "n1": "SH"},
            {"word": "chimarrão", "n1": "AL", "n2": "AL.01"},
        ],
    )
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
                "context": f"tomando {word} na querência",
            }
            for index, word in enumerate(WORDS, start=1)
        ],
    )


def test_annotation_run_uses_each_tier(make_stack):
    stack = make_stack(CORPORA="gaucho")
    _seed(stack)
    stack.provider.classify_word.side_effect = classify_word

    job = stack.orchestrator.start()
    result = stack.executor.run_chunk(JobType.ANNOTATE, job.id)

    assert result.status is ChunkStatus.COMPLETED
    assert (result.processed, result.succeeded, result.unclassified, result.errors) == (4, 3, 1, 0)

    cache = stack.classifier.cache
    chimarrao = cache.get("chimarrão")
    assert chimarrao.code == "AL.01"
    assert chimarrao.source.value == "dictionary"

    gauchinho = cache.get("gauchinho")
    assert gauchinho.n1 == "SH"
    assert gauchinho.confidence == 0.70
    assert gauchinho.source.value == "dictionary-inherited"
    assert gauchinho.base_word == "gaucho"

    assert cache.get("mate amargo").code == "AL.02"

    unknown = cache.get("xyz123")
    assert unknown.n1 == UNCLASSIFIED
    assert unknown.confidence == 0.0

    called = [call.args[0] for call in stack.provider.classify_word.call_args_list]
    assert sorted(called) == ["mate amargo", "xyz123"]

    done = stack.repository.get(JobType.ANNOTATE, job.id)
    assert done.status is JobStatus.COMPLETED
    assert done.cursor == 4


def test_second_run_is_served_from_cache(make_stack):
    stack = make_stack(CORPORA="gaucho")
    _seed(stack)
    stack.provider.classify_word.side_effect = classify_word

    first = stack.orchestrator.start()
    stack.executor.run_chunk(JobType.ANNOTATE, first.id)
    calls = stack.provider.classify_word.call_count
    rows = sorted(
        (dict(row) for row in stack.client.table("semantic_disambiguation_cache")),
        key=lambda row: row["word"],
    )

    second = stack.orchestrator.start("gaucho")
    result = stack.executor.run_chunk(JobType.ANNOTATE, second.id)

    assert result.status is ChunkStatus.COMPLETED
    assert (result.succeeded, result.unclassified) == (3, 1)
    assert stack.provider.classify_word.call_count == calls
    assert sorted(stack.client.table("semantic_disambiguation_cache"), key=lambda r: r["word"]) == rows
