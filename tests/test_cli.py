"""CLI tests: key handling, voucher signing and registry administration."""

import json

import pytest
from click.testing import CliRunner
from eth_account import Account

from paymaster.cli import _parse_duration_to_seconds, main
from paymaster.hosts import PackedUserOperation, pack_uint128_pair

PAYMASTER = "0x" + "aa" * 20
TOKEN = "0x" + "70" * 20


@pytest.fixture
def env(tmp_path, monkeypatch):
    monkeypatch.delenv("PAYMASTER_REGISTRY_PATH", raising=False)
    monkeypatch.delenv("PAYMASTER_EVENT_LOG_PATH", raising=False)
    return {
        "PAYMASTER_HOME": str(tmp_path / "home"),
        "PAYMASTER_ADDRESS": PAYMASTER,
        "PAYMASTER_CHAIN_ID": "8453",
    }


@pytest.fixture
def op_file(tmp_path):
    op = PackedUserOperation(
        sender="0x" + "5e" * 20,
        nonce=1,
        init_code=b"",
        call_data=b"\x01\x02",
        account_gas_limits=pack_uint128_pair(90_000, 120_000),
        pre_verification_gas=48_000,
        gas_fees=pack_uint128_pair(10 ** 9, 2 * 10 ** 9),
    )
    path = tmp_path / "op.json"
    path.write_text(json.dumps(op.to_rpc()))
    return path


def _key_hex(account) -> str:
    raw = account.key.hex()
    return raw if raw.startswith("0x") else "0x" + raw


def _sign(runner, env, op_file, account, *extra):
    return runner.invoke(
        main,
        [
            "sign",
            "--op-file", str(op_file),
            "--signer-key", _key_hex(account),
            "--unsafe-allow-key-arg",
            *extra,
        ],
        env=env,
    )


def test_sign_rejects_raw_key_on_argv(env, op_file):
    runner = CliRunner()
    signer = Account.create()

    result = runner.invoke(
        main,
        ["sign", "--op-file", str(op_file), "--signer-key", _key_hex(signer)],
        env=env,
    )

    assert result.exit_code != 0
    assert "Refusing --signer-key from argv" in result.output


def test_sign_accepts_prompted_key(env, op_file):
    runner = CliRunner()
    signer = Account.create()

    result = runner.invoke(
        main,
        ["sign", "--op-file", str(op_file)],
        input=_key_hex(signer) + "\n",
        env=env,
    )

    assert result.exit_code == 0, result.output
    assert result.output.strip().splitlines()[-1].startswith("0x" + "aa" * 20)


def test_sign_then_verify_against_registry(env, op_file, tmp_path):
    runner = CliRunner()
    signer = Account.create()

    init = runner.invoke(main, ["registry", "init", "--owner", signer.address], env=env)
    assert init.exit_code == 0, init.output

    signed = _sign(runner, env, op_file, signer, "--mode", "erc20", "--fee-token", TOKEN, "--price", "0.0016")
    assert signed.exit_code == 0, signed.output
    pnd = signed.output.strip().splitlines()[-1]

    op = json.loads(op_file.read_text())
    op["paymasterAndData"] = pnd
    signed_op = tmp_path / "signed.json"
    signed_op.write_text(json.dumps(op))

    result = runner.invoke(main, ["verify", "--op-file", str(signed_op)], env=env)

    assert result.exit_code == 0, result.output
    assert "Voucher valid (erc20 mode)" in result.output
    assert signer.address.lower() in result.output
    assert "1600000000000000 (0.0016 per native unit)" in result.output


def test_verify_rejects_unregistered_signer(env, op_file, tmp_path):
    runner = CliRunner()
    owner = Account.create()
    stranger = Account.create()
    runner.invoke(main, ["registry", "init", "--owner", owner.address], env=env)

    signed = _sign(runner, env, op_file, stranger, "--compact")
    op = json.loads(op_file.read_text())
    op["paymasterAndData"] = signed.output.strip().splitlines()[-1]
    signed_op = tmp_path / "signed.json"
    signed_op.write_text(json.dumps(op))

    result = runner.invoke(main, ["verify", "--op-file", str(signed_op)], env=env)

    assert result.exit_code == 1
    assert "SignatureInvalidError" in result.output


def test_decode_prints_header_and_voucher(env, op_file):
    runner = CliRunner()
    signed = _sign(runner, env, op_file, Account.create(), "--valid-for", "never", "--fund-amount", "42")
    pnd = signed.output.strip().splitlines()[-1]

    result = runner.invoke(main, ["decode", pnd])

    assert result.exit_code == 0, result.output
    decoded = json.loads(result.output)
    assert decoded["paymaster"] == PAYMASTER
    assert decoded["validation_gas_limit"] == 100_000
    assert decoded["voucher"]["mode"] == "verifying"
    assert decoded["voucher"]["fund_amount"] == 42
    assert decoded["voucher"]["valid_until"] == 0


def test_decode_reports_malformed_data():
    result = CliRunner().invoke(main, ["decode", "--tail-only", "0x05"])

    assert result.exit_code == 1
    assert "ModeInvalidError" in result.output


def test_registry_admin_requires_owner(env):
    runner = CliRunner()
    owner = "0x" + "0a" * 20
    other = "0x" + "0b" * 20
    runner.invoke(main, ["registry", "init", "--owner", owner], env=env)

    denied = runner.invoke(main, ["registry", "add-signer", other, "--caller", other], env=env)
    assert denied.exit_code == 1
    assert "NotOwnerError" in denied.output

    added = runner.invoke(main, ["registry", "add-signer", other, "--caller", owner], env=env)
    assert added.exit_code == 0, added.output
    runner.invoke(main, ["registry", "set-treasury", other, "--caller", owner], env=env)

    shown = json.loads(runner.invoke(main, ["registry", "show"], env=env).output)
    assert shown["signers"] == [owner, other]
    assert shown["treasury"] == other


def test_registry_init_refuses_overwrite(env):
    runner = CliRunner()
    owner = "0x" + "0a" * 20
    assert runner.invoke(main, ["registry", "init", "--owner", owner], env=env).exit_code == 0

    again = runner.invoke(main, ["registry", "init", "--owner", owner], env=env)

    assert again.exit_code == 1
    assert "already exists" in again.output


def test_parse_duration():
    assert _parse_duration_to_seconds("30m") == 1800
    assert _parse_duration_to_seconds("12h") == 43200
    assert _parse_duration_to_seconds("never") == 0
    with pytest.raises(ValueError):
        _parse_duration_to_seconds("soon")
