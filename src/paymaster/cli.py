"""
Paymaster CLI: voucher tooling and registry administration.

Commands:
    paymaster decode     Decode a paymasterAndData value
    paymaster sign       Sign a sponsorship voucher for a user operation
    paymaster verify     Verify the voucher attached to a user operation
    paymaster registry   Manage signers, treasury and hosts
"""

from __future__ import annotations

import dataclasses
import json
import os
import subprocess
import sys
import time
from pathlib import Path
from typing import Optional

import click
from click.core import ParameterSource

from .codec import (
    Erc20Voucher,
    VerifyingVoucher,
    address_to_bytes,
    decode_voucher,
    hex_to_bytes,
    pack_paymaster_and_data,
    split_paymaster_and_data,
    voucher_to_dict,
)
from .errors import PaymasterError
from .events import EventLog
from .hosts import LegacyUserOperation, PackedUserOperation, pack_uint128_pair
from .money import format_token_amount, price_to_exchange_rate
from .registry import SignerRegistry
from .verifier import sign_voucher, verify_voucher


# ── Storage ───────────────────────────────────────────────────────

def _paymaster_home() -> Path:
    override = os.getenv("PAYMASTER_HOME")
    return Path(override) if override else Path.home() / ".paymaster"


def _registry_path() -> Path:
    override = os.getenv("PAYMASTER_REGISTRY_PATH")
    return Path(override) if override else _paymaster_home() / "registry.json"


def _event_log() -> EventLog:
    override = os.getenv("PAYMASTER_EVENT_LOG_PATH")
    return EventLog(Path(override) if override else _paymaster_home() / "events.jsonl")


def _load_registry() -> SignerRegistry:
    path = _registry_path()
    if not path.exists():
        click.echo(f"❌ No registry at {path}. Run `paymaster registry init` first.", err=True)
        sys.exit(1)
    return SignerRegistry.load(path, events=_event_log())


def _load_user_op(op_file: str, entry_point: str):
    with open(op_file) as f:
        raw = json.load(f)
    if entry_point == "v0.6":
        return LegacyUserOperation.from_rpc(raw)
    return PackedUserOperation.from_rpc(raw)


def _parse_duration_to_seconds(value: str) -> int:
    raw = value.strip().lower()
    if raw in {"never", "none", "0"}:
        return 0
    units = {"s": 1, "m": 60, "h": 3600, "d": 86400}
    if len(raw) < 2 or raw[-1] not in units or not raw[:-1].isdigit():
        raise ValueError(f"Invalid duration: {value} (expected formats like 30m, 12h, never)")
    return int(raw[:-1]) * units[raw[-1]]


def _resolve_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("op://"):
        result = subprocess.run(
            ["op", "read", candidate],
            capture_output=True,
            text=True,
            timeout=10,
        )
        if result.returncode != 0:
            raise RuntimeError(f"Failed to read key from 1Password reference: {result.stderr.strip()}")
        candidate = result.stdout.strip()

    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("Private key must be a 32-byte hex string or valid op:// reference")
    int(candidate, 16)
    return "0x" + candidate


def _refuse_key_from_argv(param: str, flag: str, unsafe_allow_key_arg: bool) -> None:
    ctx = click.get_current_context(silent=True)
    key_from_argv = ctx is not None and ctx.get_parameter_source(param) == ParameterSource.COMMANDLINE
    if key_from_argv and not unsafe_allow_key_arg:
        click.echo(
            f"❌ Refusing {flag} from argv. Re-run with prompt input or pass "
            "--unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
def main():
    """Paymaster: singleton ERC-4337 gas sponsorship tooling."""
    pass


@main.command()
@click.argument("paymaster_and_data")
@click.option("--tail-only", is_flag=True, default=False,
              help="Input is the voucher tail only (no 52-byte paymaster header)")
def decode(paymaster_and_data: str, tail_only: bool):
    """Decode a paymasterAndData value and print it as JSON."""
    try:
        raw = hex_to_bytes(paymaster_and_data)
        out: dict = {}
        if tail_only:
            tail = raw
        else:
            header, tail = split_paymaster_and_data(raw)
            out.update(dataclasses.asdict(header))
        out["voucher"] = voucher_to_dict(decode_voucher(tail))
    except (PaymasterError, ValueError) as e:
        click.echo(f"❌ Cannot decode: {type(e).__name__}: {e}", err=True)
        sys.exit(1)
    click.echo(json.dumps(out, indent=2))


@main.command()
@click.option("--op-file", required=True, type=click.Path(exists=True, dir_okay=False),
              help="User operation JSON (RPC format)")
@click.option("--entry-point", type=click.Choice(["v0.6", "v0.7"]), default="v0.7",
              help="User operation encoding (default: v0.7)")
@click.option("--paymaster", default=lambda: os.getenv("PAYMASTER_ADDRESS"), required=True,
              help="Paymaster address (env PAYMASTER_ADDRESS)")
@click.option("--chain-id", type=int, default=lambda: os.getenv("PAYMASTER_CHAIN_ID"), required=True,
              help="Chain id (env PAYMASTER_CHAIN_ID)")
@click.option("--validation-gas", type=int, default=100_000, help="Paymaster validation gas limit")
@click.option("--post-op-gas", type=int, default=50_000, help="Paymaster post-op gas limit")
@click.option("--mode", type=click.Choice(["verifying", "erc20"]), default="verifying")
@click.option("--fee-token", default=None, help="ERC-20 fee token address (erc20 mode)")
@click.option("--price", default=None, help="Tokens per 1 native unit, e.g. 0.0016 (erc20 mode)")
@click.option("--token-decimals", type=int, default=18, help="Fee token decimals (default: 18)")
@click.option("--fund-amount", type=int, default=0, help="Advance/subsidy amount")
@click.option("--valid-for", default="1h", help="Validity window from now (e.g. 30m, 12h, never)")
@click.option("--valid-after", type=int, default=0, help="Earliest valid timestamp")
@click.option("--compact", is_flag=True, default=False, help="Emit a 64-byte EIP-2098 signature")
@click.option("--signer-key", prompt=True, hide_input=True, help="Signer private key hex or op:// reference")
@click.option(
    "--unsafe-allow-key-arg",
    is_flag=True,
    default=False,
    help="Allow passing --signer-key via argv (unsafe; can leak in shell/process history).",
)
def sign(
    op_file: str,
    entry_point: str,
    paymaster: str,
    chain_id: int,
    validation_gas: int,
    post_op_gas: int,
    mode: str,
    fee_token: Optional[str],
    price: Optional[str],
    token_decimals: int,
    fund_amount: int,
    valid_for: str,
    valid_after: int,
    compact: bool,
    signer_key: str,
    unsafe_allow_key_arg: bool,
):
    """Sign a voucher and print the resulting paymasterAndData."""
    _refuse_key_from_argv("signer_key", "--signer-key", unsafe_allow_key_arg)

    try:
        window = _parse_duration_to_seconds(valid_for)
        valid_until = int(time.time()) + window if window > 0 else 0
        if mode == "erc20":
            if not fee_token or not price:
                raise ValueError("--fee-token and --price are required in erc20 mode")
            voucher = Erc20Voucher(
                fund_amount=fund_amount,
                valid_until=valid_until,
                valid_after=valid_after,
                fee_token=fee_token,
                exchange_rate=price_to_exchange_rate(price, token_decimals),
            )
        else:
            voucher = VerifyingVoucher(
                fund_amount=fund_amount,
                valid_until=valid_until,
                valid_after=valid_after,
            )

        user_op = _load_user_op(op_file, entry_point)
        header = address_to_bytes(paymaster) + pack_uint128_pair(validation_gas, post_op_gas)
        op = dataclasses.replace(user_op, paymaster_and_data=header).normalize()
        signed = sign_voucher(
            _resolve_private_key(signer_key),
            op,
            voucher,
            chain_id=chain_id,
            paymaster=paymaster,
            compact=compact,
        )
        packed = pack_paymaster_and_data(paymaster, validation_gas, post_op_gas, signed)
    except Exception as e:
        click.echo(f"❌ Failed to sign voucher: {e}", err=True)
        sys.exit(1)

    click.echo("0x" + packed.hex())


@main.command()
@click.option("--op-file", required=True, type=click.Path(exists=True, dir_okay=False),
              help="User operation JSON including paymasterAndData")
@click.option("--entry-point", type=click.Choice(["v0.6", "v0.7"]), default="v0.7")
@click.option("--chain-id", type=int, default=lambda: os.getenv("PAYMASTER_CHAIN_ID"), required=True,
              help="Chain id (env PAYMASTER_CHAIN_ID)")
@click.option("--at", "at_time", type=int, default=None, help="Evaluate at this timestamp (default: now)")
@click.option("--token-decimals", type=int, default=18, help="Fee token decimals for display (default: 18)")
def verify(op_file: str, entry_point: str, chain_id: int, at_time: Optional[int], token_decimals: int):
    """Verify a user operation's voucher against the local registry."""
    registry = _load_registry()
    try:
        op = _load_user_op(op_file, entry_point).normalize()
        voucher = decode_voucher(op.paymaster_data)
        signer = verify_voucher(
            op,
            voucher,
            registry,
            chain_id=chain_id,
            paymaster=op.paymaster,
            now=at_time,
        )
    except (PaymasterError, ValueError) as e:
        click.echo(f"❌ Voucher rejected: {type(e).__name__}: {e}")
        sys.exit(1)

    click.echo(f"✅ Voucher valid ({voucher.mode.name.lower()} mode)")
    click.echo(f"   Signer:      {signer}")
    click.echo(f"   Sender:      {op.sender}")
    click.echo(f"   Valid until: {voucher.valid_until or 'no expiry'}")
    if isinstance(voucher, Erc20Voucher):
        click.echo(f"   Fee token:   {voucher.fee_token}")
        click.echo(
            f"   Rate:        {voucher.exchange_rate} "
            f"({format_token_amount(voucher.exchange_rate, token_decimals)} per native unit)"
        )


@main.group("registry")
def registry_group():
    """Signer, treasury and host administration."""
    pass


@registry_group.command("init")
@click.option("--owner", required=True, help="Owner address (initial signer and treasury)")
@click.option("--host", "hosts", multiple=True, help="Execution host (EntryPoint) address")
@click.option("--force", is_flag=True, default=False, help="Overwrite an existing registry")
def registry_init(owner: str, hosts: tuple[str, ...], force: bool):
    """Create a registry with OWNER as sole signer and treasury."""
    path = _registry_path()
    if path.exists() and not force:
        click.echo(f"❌ Registry already exists at {path} (use --force to overwrite)", err=True)
        sys.exit(1)
    try:
        registry = SignerRegistry(owner, hosts=hosts, events=_event_log())
    except ValueError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    registry.save(path)
    click.echo(f"✓ Registry created: {path}")
    click.echo(f"  Owner: {registry.owner}")


@registry_group.command("show")
def registry_show():
    """Print the registry as JSON."""
    click.echo(json.dumps(_load_registry().to_dict(), indent=2))


def _admin_command(action: str, address: str, caller: str) -> None:
    registry = _load_registry()
    try:
        getattr(registry, action)(caller, address)
    except (PaymasterError, ValueError) as e:
        click.echo(f"❌ {type(e).__name__}: {e}", err=True)
        sys.exit(1)
    registry.save(_registry_path())
    click.echo(f"✓ {action.replace('_', ' ')}: {address}")


@registry_group.command("add-signer")
@click.argument("address")
@click.option("--caller", required=True, help="Address performing the change (must be owner)")
def registry_add_signer(address: str, caller: str):
    """Authorize ADDRESS to sign vouchers."""
    _admin_command("add_signer", address, caller)


@registry_group.command("remove-signer")
@click.argument("address")
@click.option("--caller", required=True, help="Address performing the change (must be owner)")
def registry_remove_signer(address: str, caller: str):
    """Revoke ADDRESS's signing authority."""
    _admin_command("remove_signer", address, caller)


@registry_group.command("set-treasury")
@click.argument("address")
@click.option("--caller", required=True, help="Address performing the change (must be owner)")
def registry_set_treasury(address: str, caller: str):
    """Send collected fees to ADDRESS."""
    _admin_command("set_treasury", address, caller)


@registry_group.command("add-host")
@click.argument("address")
@click.option("--caller", required=True, help="Address performing the change (must be owner)")
def registry_add_host(address: str, caller: str):
    """Allow ADDRESS to call validate/settle."""
    _admin_command("add_host", address, caller)


@registry_group.command("remove-host")
@click.argument("address")
@click.option("--caller", required=True, help="Address performing the change (must be owner)")
def registry_remove_host(address: str, caller: str):
    """Stop accepting validate/settle calls from ADDRESS."""
    _admin_command("remove_host", address, caller)


if __name__ == "__main__":
    main()
