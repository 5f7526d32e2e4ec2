import random, threading

import pytest

from bloatbench.pool import OLDEST, RANDOM, NotFound, ObjectPool, PoolView, TrackedObject

from conftest import objs


def test_register_is_idempotent_and_keeps_version(pool):
    a = TrackedObject("0xa", 3)
    assert pool.register(a)
    assert not pool.register(TrackedObject("0xa", 9))
    assert pool.get("0xa").version == 3
    assert len(pool) == 1


def test_pick_oldest_is_head_first(pool):
    pool.register_many(objs(5))
    assert [o.id for o in pool.pick(3, OLDEST)] == ["0x0000", "0x0001", "0x0002"]


@pytest.mark.parametrize("n", [0, 1, 4, 10, 50])
def test_pick_random_bounded_and_distinct(pool, n):
    pool.register_many(objs(10))
    got = pool.pick(n, RANDOM, random.Random(1))
    assert len(got) == min(n, 10)
    assert len({o.id for o in got}) == len(got)


def test_pick_from_empty_pool_is_short_not_an_error(pool):
    assert pool.pick(5, RANDOM) == []
    assert pool.pick(5, OLDEST) == []


def test_pick_unknown_policy(pool):
    pool.register_many(objs(2))
    with pytest.raises(ValueError):
        pool.pick(1, "newest")


def test_bump_and_missing_bump(pool):
    pool.register(TrackedObject("0xa", 1))
    assert pool.bump("0xa", 5).version == 5
    assert pool.get("0xa").version == 5
    with pytest.raises(NotFound):
        pool.bump("0xb", 2)


def test_remove_tolerates_missing(pool):
    pool.register(TrackedObject("0xa", 1))
    assert pool.remove("0xa")
    assert not pool.remove("0xa")
    assert "0xa" not in pool


def test_trim_evicts_oldest_and_keeps_newest():
    p = ObjectPool(capacity=4)
    p.register_many(objs(10))
    evicted = p.trim()
    assert len(p) == 4
    assert evicted == [f"0x{i:04x}" for i in range(6)]
    assert p.ids()[-1] == "0x0009"
    assert p.evicted == 6
    with pytest.raises(ValueError):
        p.trim(-1)
    assert p.trim(0) == [f"0x{i:04x}" for i in range(6, 10)]
    assert len(p) == 0 and p.evicted == 10


def test_leased_objects_are_hidden_and_exclusive(pool):
    pool.register_many(objs(3))
    got = pool.lease(["0x0000", "0x0001", "0xdead"])
    assert [o.id for o in got] == ["0x0000", "0x0001"]
    assert pool.lease(["0x0000"]) == []
    view = pool.view()
    assert [o.id for o in view.objects] == ["0x0002"]
    assert view.size == 3
    pool.release(["0x0000"])
    assert [o.id for o in pool.view().objects] == ["0x0000", "0x0002"]


def test_trim_drops_lease_of_evicted_object():
    p = ObjectPool(capacity=1)
    p.register_many(objs(2))
    p.lease(["0x0000"])
    p.trim()
    assert p.leased() == set()


def test_pool_view_of():
    v = PoolView.of(objs(4))
    assert v.size == 4
    assert [o.id for o in v.pick(2, OLDEST)] == ["0x0000", "0x0001"]


def _script():
    rng = random.Random(3)
    ops, live = [], []
    for i in range(400):
        r = rng.random()
        if r < 0.5 or not live:
            oid = f"0x{i:04x}"
            ops.append(("register", oid, 1))
            live.append(oid)
        elif r < 0.8:
            ops.append(("bump", rng.choice(live), i))
        else:
            oid = live.pop(rng.randrange(len(live)))
            ops.append(("remove", oid, 0))
    return ops

def _apply(p, ops):
    for op, oid, v in ops:
        if op == "register":
            p.register(TrackedObject(oid, v))
        elif op == "bump":
            p.bump(oid, v)
        else:
            p.remove(oid)


def test_concurrent_readers_never_see_torn_state():
    ops = _script()
    ref = ObjectPool(capacity=1000)
    _apply(ref, ops)

    live = ObjectPool(capacity=1000)
    stop, errors = threading.Event(), []

    def reader(seed):
        rng = random.Random(seed)
        while not stop.is_set():
            got = live.pick(8, RANDOM, rng)
            if len({o.id for o in got}) != len(got):
                errors.append("duplicate ids")
            if any(not isinstance(o.version, int) for o in got):
                errors.append("torn object")

    thrs = [threading.Thread(target=reader, args=(i,)) for i in range(4)]
    for t in thrs: t.start()
    _apply(live, ops)
    stop.set()
    for t in thrs: t.join()

    assert not errors
    assert [(o.id, o.version) for o in live.view().objects] == \
        [(o.id, o.version) for o in ref.view().objects]
