from classifier.lexicon import LEXICON_TABLE, SupabaseLexicon
from fakes import FakeSupabase


def _client():
    client = FakeSupabase()
    client.seed(
        LEXICON_TABLE,
        [
            {"word": "gaucho", "n1": "SH", "n2": "SH.03"},
            {"word": "xucro", "n1": "NC"},
        ],
    )
    return client


def test_lookup_returns_deepest_code():
    lexicon = SupabaseLexicon(_client())

    entry = lexicon.lookup(" Gaucho ")

    assert entry.code == "SH.03"
    assert entry.n1 == "SH"


def test_unclassified_rows_and_unknown_words_are_misses():
    lexicon = SupabaseLexicon(_client())

    assert lexicon.lookup("xucro") is None
    assert lexicon.lookup("pampa") is None
    assert lexicon.lookup("   ") is None


def test_hits_and_misses_are_memoized():
    client = _client()
    lexicon = SupabaseLexicon(client)

    for _ in range(3):
        lexicon.lookup("gaucho")
        lexicon.lookup("pampa")

    assert client.count_calls("select", LEXICON_TABLE) == 2


def test_memo_keeps_only_the_most_recent_words():
    client = _client()
    lexicon = SupabaseLexicon(client, memo_size=2)

    lexicon.lookup("gaucho")
    lexicon.lookup("pampa")
    lexicon.lookup("gaucho")
    lexicon.lookup("coxilha")
    lexicon.lookup("gaucho")
    lexicon.lookup("pampa")

    # "pampa" was least recently used when "coxilha" arrived.
    assert client.count_calls("select", LEXICON_TABLE) == 4


def test_clear_forgets_memoized_lookups():
    client = _client()
    lexicon = SupabaseLexicon(client)
    lexicon.lookup("pampa")
    client.seed(LEXICON_TABLE, [{"word": "pampa", "n1": "NA"}])

    lexicon.clear()

    assert lexicon.lookup("pampa").code == "NA"
