import json
from pathlib import Path

import pytest

from valcluster.cluster.models import NodeRole
from valcluster.errors import GenesisError, GenesisReason
from valcluster.genesis.builder import GenesisBuilder, genesis_hash
from valcluster.identity.provisioner import IdentityProvisioner


def _identities(base: Path, validators: int):
    p = IdentityProvisioner(base)
    ids = [p.provision(NodeRole.BOOTSTRAP, 0)]
    ids += [p.provision(NodeRole.VALIDATOR, i) for i in range(1, validators + 1)]
    return ids


def test_genesis_is_deterministic(tmp_path: Path, make_config):
    cfg = make_config(node_count=2)
    ids = _identities(cfg.base_dir, 2)

    a = GenesisBuilder(tmp_path / "a").build_or_reuse(cfg, ids)
    b = GenesisBuilder(tmp_path / "b").build_or_reuse(cfg, list(reversed(ids)))

    assert a.genesis_hash == b.genesis_hash
    assert a.snapshot_path.read_bytes() == b.snapshot_path.read_bytes()
    assert a.genesis_hash == genesis_hash(a.snapshot_path.read_bytes())


def test_genesis_contents(make_config):
    cfg = make_config(node_count=1, genesis_params={
        "cluster_lamports": 1_000,
        "bootstrap_stake_lamports": 100,
        "validator_stake_lamports": 50,
        "account_presets": {"faucet": 200},
    })
    ids = _identities(cfg.base_dir, 1)
    ledger = GenesisBuilder(cfg.base_dir).build_or_reuse(cfg, ids)

    doc = json.loads(ledger.snapshot_path.read_text())
    assert [v["name"] for v in doc["validators"]] == ["bootstrap-0", "validator-1"]
    assert [v["stake_lamports"] for v in doc["validators"]] == [100, 50]
    assert doc["accounts"] == {"faucet": 200}
    assert doc["mint_lamports"] == 650


def test_rerun_reuses_matching_snapshot(make_config):
    cfg = make_config(node_count=1)
    ids = _identities(cfg.base_dir, 1)
    first = GenesisBuilder(cfg.base_dir).build_or_reuse(cfg, ids)
    second = GenesisBuilder(cfg.base_dir).build_or_reuse(cfg, ids)
    assert first == second


def test_changed_params_do_not_overwrite_existing_genesis(make_config):
    cfg = make_config(node_count=1)
    ids = _identities(cfg.base_dir, 1)
    ledger = GenesisBuilder(cfg.base_dir).build_or_reuse(cfg, ids)
    before = ledger.snapshot_path.read_bytes()

    changed = make_config(node_count=1, genesis_params={"ticks_per_slot": 8})
    with pytest.raises(GenesisError) as ei:
        GenesisBuilder(cfg.base_dir).build_or_reuse(changed, ids)

    assert ei.value.reason == GenesisReason.INCOMPATIBLE_EXISTING_LEDGER
    assert ledger.snapshot_path.read_bytes() == before


def test_prepare_node_ledger(make_config):
    cfg = make_config(node_count=1)
    ledger = GenesisBuilder(cfg.base_dir).build_or_reuse(cfg, _identities(cfg.base_dir, 1))

    path = ledger.prepare_node_ledger("validator-1")

    assert path == cfg.base_dir / "ledger" / "validator-1"
    assert (path / "genesis.json").read_bytes() == ledger.snapshot_path.read_bytes()
    assert (path / "genesis.hash").read_text().strip() == ledger.genesis_hash
    # idempotent
    assert ledger.prepare_node_ledger("validator-1") == path


def test_ledger_from_other_genesis_is_rejected(make_config):
    cfg = make_config(node_count=1)
    ledger = GenesisBuilder(cfg.base_dir).build_or_reuse(cfg, _identities(cfg.base_dir, 1))
    stale = cfg.base_dir / "ledger" / "validator-1"
    stale.mkdir(parents=True)
    (stale / "genesis.hash").write_text("deadbeef\n")
    (stale / "rocksdb").mkdir()

    with pytest.raises(GenesisError) as ei:
        ledger.prepare_node_ledger("validator-1")

    assert ei.value.reason == GenesisReason.INCOMPATIBLE_EXISTING_LEDGER
    assert (stale / "rocksdb").is_dir()
    assert (stale / "genesis.hash").read_text() == "deadbeef\n"


def test_prebaked_snapshot_is_copied(tmp_path: Path, make_config):
    baked = tmp_path / "baked-genesis.bin"
    baked.write_bytes(b"\x00prebaked genesis\xff")
    cfg = make_config(node_count=0, genesis_params={"prebaked_snapshot": str(baked)})

    ledger = GenesisBuilder(cfg.base_dir).build_or_reuse(cfg, _identities(cfg.base_dir, 0))

    assert ledger.snapshot_path.read_bytes() == baked.read_bytes()
    assert ledger.genesis_hash == genesis_hash(baked.read_bytes())


def test_overallocated_supply_fails(make_config):
    cfg = make_config(node_count=1, genesis_params={"cluster_lamports": 10})
    with pytest.raises(GenesisError) as ei:
        GenesisBuilder(cfg.base_dir).build_or_reuse(cfg, _identities(cfg.base_dir, 1))
    assert ei.value.reason == GenesisReason.SNAPSHOT_WRITE_FAILED


def test_recorded_validators(tmp_path: Path, make_config):
    cfg = make_config(node_count=1)
    ids = _identities(cfg.base_dir, 1)
    builder = GenesisBuilder(cfg.base_dir)
    assert builder.recorded_validators() == {}

    builder.build_or_reuse(cfg, ids)

    recorded = builder.recorded_validators()
    assert sorted(recorded) == ["bootstrap-0", "validator-1"]
    assert recorded["validator-1"]["identity"] == ids[1].public_key
    assert recorded["validator-1"]["vote_account"] == ids[1].vote_public_key


def test_recorded_validators_ignores_foreign_snapshot(tmp_path: Path, make_config):
    baked = tmp_path / "baked.bin"
    baked.write_bytes(b"\xff\x00 not json")
    cfg = make_config(node_count=0, genesis_params={"prebaked_snapshot": str(baked)})
    builder = GenesisBuilder(cfg.base_dir)
    builder.build_or_reuse(cfg, _identities(cfg.base_dir, 0))
    assert builder.recorded_validators() == {}
