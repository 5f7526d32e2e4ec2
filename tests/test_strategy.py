import pytest

from bloatbench.pool import PoolView
from bloatbench.strategy import (OpKind, Strategy, WorkloadDecision, fallback_create,
                                 update_size_kb, varied_size_kb)

from conftest import make_cfg, objs


def test_blobs_is_a_fixed_create_batch(cfg):
    d = Strategy.BLOBS.decide(4, PoolView(), cfg)
    assert d.kind is OpKind.CREATE
    assert d.count == 5
    assert d.targets == ()
    assert d.size_parameters == (100,)
    assert d.payload_bytes == 100 * 5 * 1024


def test_varied_cycles_size_multipliers(cfg):
    sizes = [Strategy.VARIED.decide(i, PoolView(), cfg).size_parameters[0] for i in range(8)]
    assert sizes == [50, 100, 150, 200] * 2
    assert varied_size_kb(1, 0) == 1


def test_update_heavy_warms_up_with_creates():
    cfg = make_cfg(target_pool_size=3, update_ratio=1.0, batch_size=1)
    for size in range(3):
        d = Strategy.UPDATE_HEAVY.decide(size, PoolView.of(objs(size)), cfg)
        assert d.kind is OpKind.CREATE
        assert d.label.endswith("warmup")


def test_update_heavy_updates_once_warm():
    cfg = make_cfg(target_pool_size=3, update_ratio=1.0, batch_size=2)
    view = PoolView.of(objs(3))
    d = Strategy.UPDATE_HEAVY.decide(3, view, cfg)
    assert d.kind is OpKind.UPDATE
    assert 1 <= len(d.targets) <= 2
    assert len({t.id for t in d.targets}) == len(d.targets)
    assert {t.id for t in d.targets} <= {o.id for o in view.objects}
    assert set(d.size_parameters) == {update_size_kb(cfg, 3)} == {100 + 3 * 20}


def test_update_heavy_ratio_zero_only_creates():
    cfg = make_cfg(target_pool_size=3, update_ratio=0.0)
    for i in range(20):
        assert Strategy.UPDATE_HEAVY.decide(i, PoolView.of(objs(5)), cfg).kind is OpKind.CREATE


def test_update_heavy_falls_back_when_everything_is_leased():
    cfg = make_cfg(target_pool_size=3, update_ratio=1.0)
    d = Strategy.UPDATE_HEAVY.decide(9, PoolView((), 6), cfg)
    assert d.kind is OpKind.CREATE
    assert d.count == cfg.batch_size


def test_update_heavy_is_deterministic():
    cfg = make_cfg(target_pool_size=3, update_ratio=0.5, batch_size=3)
    view = PoolView.of(objs(10))
    for i in range(30):
        assert Strategy.UPDATE_HEAVY.decide(i, view, cfg) == \
            Strategy.UPDATE_HEAVY.decide(i, view, cfg)


def test_churn_on_a_full_pool():
    cfg = make_cfg(batch_size=5)
    pool = objs(25)
    d = Strategy.CHURN.decide(0, PoolView.of(pool), cfg)
    assert d.kind is OpKind.BATCH_MIXED
    (upd,), (dele,), (create,) = (d.of_kind(k) for k in
                                  (OpKind.UPDATE, OpKind.DELETE, OpKind.CREATE))
    assert upd.target == pool[0] and upd.size_kb == 200
    assert dele.target == pool[0]
    assert create.count == 3 and create.size_kb == 100
    assert len(d.ops) == 3


def test_churn_keeps_small_pools():
    d = Strategy.CHURN.decide(0, PoolView.of(objs(20)), make_cfg())
    assert [op.kind for op in d.ops] == [OpKind.UPDATE, OpKind.CREATE]


@pytest.mark.parametrize("batch,expect", [(1, 1), (2, 1), (3, 1), (7, 5)])
def test_churn_on_empty_pool_only_creates(batch, expect):
    d = Strategy.CHURN.decide(0, PoolView(), make_cfg(batch_size=batch))
    assert d.kind is OpKind.CREATE
    assert d.count == expect


def test_mixed_round_robin(cfg):
    labels = [Strategy.MIXED.decide(i, PoolView.of(objs(25)), cfg).label for i in range(6)]
    assert labels == ["mixed:blobs", "mixed:varied", "mixed:churn"] * 2


def test_restrict_drops_unleased_targets():
    pool = objs(25)
    d = Strategy.CHURN.decide(0, PoolView.of(pool), make_cfg())
    assert d.restrict([pool[0].id]) == d
    r = d.restrict([pool[1].id])
    assert [op.kind for op in r.ops] == [OpKind.CREATE]
    assert isinstance(r, WorkloadDecision) and r.iteration == d.iteration


def test_fallback_create(cfg):
    d = fallback_create(11, cfg)
    assert d.kind is OpKind.CREATE and d.count == cfg.batch_size and d.iteration == 11


def test_strategy_from_tag():
    assert Strategy("update_heavy") is Strategy.UPDATE_HEAVY
    with pytest.raises(ValueError):
        Strategy("bogus")
