import pytest
import requests

from common.supabase import DatastoreError, SupabaseClient, in_


@pytest.fixture
def client(make_settings):
    settings = make_settings(MAX_RETRIES=2)
    return SupabaseClient(settings)


@pytest.fixture
def base_url(client):
    return "http://supabase.test/rest/v1"


def test_select_sends_filters_order_and_auth(client, base_url, requests_mock):
    requests_mock.get(f"{base_url}/semantic_lexicon", json=[{"word": "gaucho", "n1": "SH"}])

    rows = client.select(
        "semantic_lexicon",
        filters={"word": "eq.gaucho"},
        columns="word,n1",
        order="id.asc",
        limit=1,
    )

    assert rows == [{"word": "gaucho", "n1": "SH"}]
    request = requests_mock.last_request
    assert request.qs["word"] == ["eq.gaucho"]
    assert request.qs["select"] == ["word,n1"]
    assert request.qs["order"] == ["id.asc"]
    assert request.qs["limit"] == ["1"]
    assert request.headers["apikey"] == "service-key"
    assert request.headers["Authorization"] == "Bearer service-key"


def test_count_reads_content_range(client, base_url, requests_mock):
    requests_mock.get(
        f"{base_url}/corpus_tokens", json=[{}], headers={"Content-Range": "0-0/42"}
    )

    assert client.count("corpus_tokens", {"corpus_id": "eq.gaucho"}) == 42
    assert requests_mock.last_request.headers["Prefer"] == "count=exact"


def test_count_without_total_raises(client, base_url, requests_mock):
    requests_mock.get(f"{base_url}/corpus_tokens", json=[], headers={"Content-Range": "*/*"})

    with pytest.raises(DatastoreError, match="Content-Range"):
        client.count("corpus_tokens")


def test_upsert_merges_on_conflict_columns(client, base_url, requests_mock):
    requests_mock.post(
        f"{base_url}/semantic_disambiguation_cache", json=[{"id": 1, "word": "mate"}]
    )

    rows = client.upsert(
        "semantic_disambiguation_cache", {"word": "mate"}, on_conflict="word,context_key"
    )

    assert rows == [{"id": 1, "word": "mate"}]
    request = requests_mock.last_request
    assert request.qs["on_conflict"] == ["word,context_key"]
    assert "resolution=merge-duplicates" in request.headers["Prefer"]
    assert request.json() == {"word": "mate"}


def test_update_returns_changed_rows_and_empty_on_lost_guard(client, base_url, requests_mock):
    requests_mock.patch(
        f"{base_url}/semantic_annotation_jobs",
        [{"json": [{"id": "a", "status": "paused"}]}, {"status_code": 200, "text": ""}],
    )

    first = client.update(
        "semantic_annotation_jobs", {"status": "paused"}, {"status": "eq.running"}
    )
    second = client.update(
        "semantic_annotation_jobs", {"status": "paused"}, {"status": "eq.running"}
    )

    assert first == [{"id": "a", "status": "paused"}]
    assert second == []
    assert requests_mock.last_request.headers["Prefer"] == "return=representation"


def test_update_and_delete_refuse_empty_filters(client):
    with pytest.raises(ValueError):
        client.update("semantic_annotation_jobs", {"status": "cancelled"}, {})
    with pytest.raises(ValueError):
        client.delete("semantic_disambiguation_cache", {})


def test_http_error_becomes_datastore_error(client, base_url, requests_mock):
    requests_mock.get(f"{base_url}/semantic_lexicon", status_code=500)

    with pytest.raises(DatastoreError, match="GET semantic_lexicon failed"):
        client.select("semantic_lexicon")


def test_connection_errors_are_retried(client, base_url, requests_mock, mocker):
    sleep_spy = mocker.patch("common.utils._sleep_backoff")
    requests_mock.get(
        f"{base_url}/semantic_lexicon",
        [
            {"exc": requests.exceptions.ConnectionError("refused")},
            {"json": [{"word": "cuia"}]},
        ],
    )

    assert client.select("semantic_lexicon") == [{"word": "cuia"}]
    assert sleep_spy.call_count == 1


def test_connection_errors_exhaust_retries(client, base_url, requests_mock, mocker):
    mocker.patch("common.utils._sleep_backoff")
    requests_mock.get(
        f"{base_url}/semantic_lexicon", exc=requests.exceptions.ConnectionError("refused")
    )

    with pytest.raises(DatastoreError):
        client.select("semantic_lexicon")
    assert requests_mock.call_count == 2


def test_in_filter_quotes_reserved_characters():
    assert in_(["running", "paused"]) == "in.(running,paused)"
    assert in_(["mate amargo", "a,b"]) == 'in.("mate amargo","a,b")'
