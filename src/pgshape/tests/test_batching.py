import threading

import pytest

from pgshape._batching import SubjectBatcher, choose_batch_size


def test_subject_batcher():
    """Test mapping a function over subjects in batches."""
    batcher = SubjectBatcher(n_jobs=1, batch_size=4)
    assert list(batcher.batches(10)) == [slice(0, 4), slice(4, 8), slice(8, 10)]
    assert batcher.map(lambda x: x * 2, list(range(10))) == [2 * i for i in range(10)]

    # Test batch size None
    batcher = SubjectBatcher(n_jobs=1, batch_size=None)
    assert list(batcher.batches(7)) == [slice(0, 7)]
    assert list(batcher.batches(0)) == []
    assert batcher.map(str, []) == []

    # Test __repr__
    repr_str = repr(SubjectBatcher(n_jobs=2, batch_size=3))
    assert "n_jobs: 2" in repr_str
    assert "batch_size: 3" in repr_str

    # Test failures
    with pytest.raises(ValueError, match="batch_size must be positive"):
        SubjectBatcher(batch_size=0)
    with pytest.raises(ValueError, match="n_jobs must be an integer"):
        SubjectBatcher(n_jobs=-2)


@pytest.mark.parametrize("batch_size", [None, 1, 3])
def test_threaded_map_keeps_order(batch_size):
    """Results come back in subject order whatever the number of workers."""
    seen = set()
    lock = threading.Lock()

    def func(item):
        with lock:
            seen.add(threading.get_ident())
        return item**2

    batcher = SubjectBatcher(n_jobs=2, batch_size=batch_size)
    assert batcher.n_workers == 2
    assert batcher.map(func, list(range(11))) == [i**2 for i in range(11)]
    assert len(seen) >= 1
    assert SubjectBatcher(n_jobs=-1).n_workers >= 1


def test_choose_batch_size():
    batch_size = choose_batch_size(N=5, lattice=(4, 4, 4), n_channels=2, n_modes=3)
    assert batch_size == 5

    # A subject that does not fit in memory is processed alone
    with pytest.warns(UserWarning, match="one at a time"):
        batch_size = choose_batch_size(
            N=5, lattice=(2000, 2000, 2000), n_channels=3, n_modes=32
        )
    assert batch_size == 1
