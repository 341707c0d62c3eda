from concurrent.futures import ThreadPoolExecutor

import pytest

from gridlocate.memoizer import Memoizer, default_memoizer


def test_memoize_is_stable_and_dense():
    memo = Memoizer()
    ids = [memo.memoize(word) for word in ["the", "cat", "the", "sat"]]
    assert ids == [0, 1, 0, 2]
    assert len(memo) == 3
    assert memo.unmemoize(1) == "cat"


def test_minimum_index_offsets_ids():
    memo = Memoizer(minimum_index=100)
    assert memo.memoize("a") == 100
    assert memo.unmemoize(100) == "a"
    assert memo.number_of_entries == 1


def test_lookup_does_not_assign():
    memo = Memoizer()
    assert memo.lookup("missing") is None
    assert "missing" not in memo
    assert len(memo) == 0


def test_unmemoize_unknown_id():
    memo = Memoizer()
    memo.memoize("a")
    with pytest.raises(KeyError):
        memo.unmemoize(5)


def test_concurrent_memoize_assigns_each_word_once():
    memo = Memoizer()
    words = [f"w{i % 50}" for i in range(2000)]
    with ThreadPoolExecutor(max_workers=8) as executor:
        ids = list(executor.map(memo.memoize, words))
    assert len(memo) == 50
    for word, index in zip(words, ids):
        assert memo.unmemoize(index) == word


def test_default_memoizer_is_shared():
    assert default_memoizer() is default_memoizer()
