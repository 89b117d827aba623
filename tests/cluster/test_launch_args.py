from pathlib import Path

import pytest

from valcluster.cluster.launch_args import build_base_args
from valcluster.cluster.models import Node, NodeRole
from valcluster.genesis.builder import GenesisLedger
from valcluster.identity.provisioner import IdentityProvisioner
from valcluster.network.entrypoint import Address


def _node(cfg, role, index):
    ident = IdentityProvisioner(cfg.base_dir).provision(role, index)
    return Node(name=ident.name, role=role, index=index, identity=ident,
                ledger_dir=cfg.base_dir / "ledger" / ident.name)


def _ledger(tmp_path: Path):
    return GenesisLedger(tmp_path / "genesis.json", "ab" * 32, tmp_path / "ledger")


def _opt(argv, flag):
    return argv[argv.index(flag) + 1]


def test_bootstrap_args(tmp_path: Path, make_config):
    cfg = make_config(extra_args=["--limit-ledger-size"])
    node = _node(cfg, NodeRole.BOOTSTRAP, 0)

    argv = build_base_args(cfg, node, _ledger(tmp_path))

    assert argv[0] == str(cfg.executable_path)
    assert _opt(argv, "--identity") == str(node.identity.keypair_path)
    assert _opt(argv, "--gossip-port") == "8001"
    assert _opt(argv, "--rpc-port") == "8899"
    assert _opt(argv, "--dynamic-port-range") == "20000-20030"
    assert _opt(argv, "--init-complete-file") == str(node.ledger_dir / "init-complete")
    assert _opt(argv, "--expected-genesis-hash") == "ab" * 32
    assert "--limit-ledger-size" in argv
    assert "--entrypoint" not in argv


def test_validator_args_use_slot_ports_and_entrypoint(tmp_path: Path, make_config):
    cfg = make_config()
    node = _node(cfg, NodeRole.VALIDATOR, 2)

    argv = build_base_args(cfg, node, _ledger(tmp_path), Address("10.0.0.5", 8001))

    assert _opt(argv, "--gossip-port") == "8201"
    assert _opt(argv, "--rpc-port") == "9099"
    assert _opt(argv, "--entrypoint") == "10.0.0.5:8001"


def test_validator_without_entrypoint_is_rejected(tmp_path: Path, make_config):
    cfg = make_config()
    with pytest.raises(ValueError):
        build_base_args(cfg, _node(cfg, NodeRole.VALIDATOR, 1), _ledger(tmp_path))
