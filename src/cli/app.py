"""Root Typer application for operating the cipher ledger and its decryptor worker."""

import json
import threading
from pathlib import Path
from typing import NoReturn, Optional

import typer
from dotenv import load_dotenv

from common.identity import Signer
from ledger.client import LedgerClient
from ledger.errors import LedgerError
from ledger.models import LedgerState
from ledger.record_store import RecordStore
from state.models import WorkerCheckpoint

from ._common import (
    console,
    install_stop_handlers,
    load_signer,
    open_backend,
    print_err,
    print_ok,
    setup_logging,
)


app = typer.Typer(
    no_args_is_help=True,
    pretty_exceptions_enable=False,
)


@app.callback()
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug-level logging"),
    quiet: bool = typer.Option(False, "--quiet", "-q", help="Warnings and errors only"),
    state_file: Optional[Path] = typer.Option(
        None,
        "--state-file",
        envvar="CIPHER_STATE_FILE",
        help="Use a local ledger file instead of the S3 object from STATE_BUCKET/PARAM_PREFIX",
    ),
):
    """Access-controlled decryption ledger."""
    load_dotenv()
    setup_logging(verbose=verbose, quiet=quiet)
    ctx.ensure_object(dict)
    ctx.obj["state_file"] = state_file


def _store(ctx: typer.Context) -> RecordStore:
    return RecordStore(open_backend(ctx.obj["state_file"], LedgerState))


def _client(ctx: typer.Context, key: Optional[str], what: str = "signer") -> LedgerClient:
    return LedgerClient(_store(ctx), load_signer(key, what))


def _fail(ex: Exception) -> NoReturn:
    print_err(f"{type(ex).__name__}: {ex}")
    raise typer.Exit(code=1)


_KEY_OPTION = typer.Option(None, "--key", envvar="SIGNER_PRIVATE_KEY", help="Hex Ed25519 private key of the caller")


@app.command("keygen", help="Generate a signing key and print its ledger identity.")
def keygen_cmd():
    signer = Signer.generate()
    console.print(f"private_key: {signer.private_key_hex()}")
    console.print(f"identity:    {signer.identity}")


@app.command("deploy", help="Initialize the ledger; the deployer becomes owner.")
def deploy_cmd(
    ctx: typer.Context,
    owner_key: Optional[str] = typer.Option(None, "--owner-key", envvar="OWNER_PRIVATE_KEY"),
    decryptor: Optional[str] = typer.Option(None, "--decryptor", help="Initial decryptor identity (default: deployer)"),
):
    state_file = ctx.obj["state_file"]
    try:
        if state_file is None:
            from deploy.handler import run_deploy

            out = run_deploy(decryptor=decryptor)
            owner, current = out["owner"], out["decryptor"]
        else:
            signer = load_signer(owner_key, "owner")
            store = RecordStore.deploy(
                open_backend(state_file, LedgerState),
                owner=signer.identity,
                decryptor=decryptor or signer.identity,
            )
            owner, current = store.owner, store.decryptor
    except (LedgerError, ValueError) as ex:
        _fail(ex)
    print_ok(f"Deployed ledger owner={owner} decryptor={current}")


@app.command("store", help="Store a hex ciphertext under ID.")
def store_cmd(ctx: typer.Context, record_id: str, ciphertext: str, key: Optional[str] = _KEY_OPTION):
    try:
        receipt = _client(ctx, key).store_ciphertext(record_id, ciphertext)
    except (LedgerError, ValueError) as ex:
        _fail(ex)
    print_ok(f"CipherStored id={record_id} tx={receipt.tx_hash}")


@app.command("request", help="Request decryption of ID.")
def request_cmd(ctx: typer.Context, record_id: str, key: Optional[str] = _KEY_OPTION):
    try:
        receipt = _client(ctx, key).request_decryption(record_id)
    except (LedgerError, ValueError) as ex:
        _fail(ex)
    print_ok(f"DecryptionRequested id={record_id} tx={receipt.tx_hash}")


@app.command("submit", help="Submit a decryption result for ID (decryptor only).")
def submit_cmd(ctx: typer.Context, record_id: str, plaintext: str, key: Optional[str] = _KEY_OPTION):
    try:
        receipt = _client(ctx, key).submit_decryption_result(record_id, plaintext)
    except (LedgerError, ValueError) as ex:
        _fail(ex)
    print_ok(f"DecryptionSubmitted id={record_id} tx={receipt.tx_hash}")


@app.command("set-decryptor", help="Rotate the authorized decryptor (owner only).")
def set_decryptor_cmd(
    ctx: typer.Context,
    new_decryptor: str,
    owner_key: Optional[str] = typer.Option(None, "--owner-key", envvar="OWNER_PRIVATE_KEY"),
):
    try:
        receipt = _client(ctx, owner_key, "owner").set_decryptor(new_decryptor)
    except (LedgerError, ValueError) as ex:
        _fail(ex)
    event = receipt.events[-1]
    print_ok(f"DecryptorUpdated {event.old_decryptor} -> {event.new_decryptor}")


@app.command("result", help="Print the decryption result for ID.")
def result_cmd(ctx: typer.Context, record_id: str):
    try:
        record = _store(ctx).get_record(record_id)
    except (LedgerError, ValueError) as ex:
        _fail(ex)
    if record is None:
        print_err(f"No ciphertext stored for id {record_id}")
        raise typer.Exit(code=1)
    if record.plaintext is None:
        console.print(f"id {record_id}: pending ({record.requests} request(s))")
        raise typer.Exit(code=3)
    console.print(record.plaintext, markup=False, highlight=False, soft_wrap=True)


@app.command("events", help="Print ledger events as JSON lines.")
def events_cmd(
    ctx: typer.Context,
    after: int = typer.Option(0, "--after", help="Only events with seq greater than this"),
    kind: Optional[str] = typer.Option(None, "--kind", help="Filter by event kind"),
):
    try:
        events = _store(ctx).events(after_seq=after, kinds=[kind] if kind else None)
    except LedgerError as ex:
        _fail(ex)
    for event in events:
        line = json.dumps(event.model_dump(mode="json"), sort_keys=True)
        console.print(line, markup=False, highlight=False, soft_wrap=True)


@app.command("worker", help="Run the decryptor worker.")
def worker_cmd(
    ctx: typer.Context,
    once: bool = typer.Option(False, "--once", help="Process pending events once and exit"),
    poll_interval: float = typer.Option(2.0, "--poll-interval"),
    max_workers: int = typer.Option(4, "--max-workers", min=1),
    limit: int = typer.Option(100, "--limit", min=1),
    key: Optional[str] = typer.Option(None, "--key", envvar="DECRYPTOR_PRIVATE_KEY"),
    allow: Optional[str] = typer.Option(None, "--allow", envvar="ALLOWED_REQUESTERS", help="CSV/JSON requester allowlist"),
    decrypt_endpoint: Optional[str] = typer.Option(None, "--decrypt-endpoint", envvar="DECRYPT_ENDPOINT"),
    decrypt_fernet_key: Optional[str] = typer.Option(None, "--decrypt-fernet-key", envvar="DECRYPT_FERNET_KEY"),
    decrypt_api_token: Optional[str] = typer.Option(None, "--decrypt-api-token", envvar="DECRYPT_API_TOKEN"),
):
    from worker.handler import (
        WorkerComponents,
        build_components,
        build_decryptor,
        build_policy,
        process_pending,
        run_forever,
    )
    from worker.processor import DecryptorWorker

    # option values take precedence over SSM parameters of the same name
    overrides = {
        "decryptor_private_key": load_signer(key, "decryptor").private_key_hex() if key else None,
        "allowed_requesters": allow,
        "decrypt_endpoint": decrypt_endpoint,
        "decrypt_fernet_key": decrypt_fernet_key,
        "decrypt_api_token": decrypt_api_token,
    }
    state_file = ctx.obj["state_file"]
    if state_file is None:
        try:
            components = build_components(overrides)
        except (RuntimeError, ValueError) as ex:
            _fail(ex)
    else:
        store = _store(ctx)
        components = WorkerComponents(
            store=store,
            worker=DecryptorWorker(
                LedgerClient(store, load_signer(key, "decryptor")),
                build_decryptor(overrides),
                build_policy(allow),
            ),
            checkpoints=open_backend(state_file, WorkerCheckpoint, checkpoint=True),
        )

    if once:
        try:
            out = process_pending(components, limit=limit, max_workers=max_workers)
        except LedgerError as ex:
            _fail(ex)
        console.print(json.dumps(out, sort_keys=True), markup=False, highlight=False, soft_wrap=True)
        return

    stop = threading.Event()
    install_stop_handlers(stop)
    run_forever(components, poll_interval=poll_interval, stop_event=stop, limit=limit, max_workers=max_workers)


if __name__ == "__main__":
    app()
