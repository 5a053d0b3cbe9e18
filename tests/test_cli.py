"""Maintenance CLI command tests (run against the test database)."""

from datetime import timedelta

import pytest

from parascene.cli.__main__ import add_credits, parse_args, recover_stale
from parascene.core.clock import to_iso, utcnow


def test_parse_args():
    args = parse_args(["-v", "add-credits", "user@example.com", "-25"])
    assert args.command == "add-credits"
    assert args.user == "user@example.com"
    assert args.amount == -25.0
    assert args.verbose is True

    args = parse_args(["recover-stale", "--limit", "10", "--dry-run"])
    assert args.command == "recover-stale"
    assert args.limit == 10
    assert args.dry_run is True


@pytest.mark.asyncio
async def test_add_credits_by_email_and_id(uow_factory, seed, get_balance, capsys):
    assert await add_credits(uow_factory, "CREATOR@example.com", 5) == 0
    assert await get_balance(seed.creator.id) == 15.0

    assert await add_credits(uow_factory, str(seed.creator.id), -100) == 0
    assert await get_balance(seed.creator.id) == 0.0

    out = capsys.readouterr().out
    assert "Old balance: 15.0" in out
    assert "New balance: 0.0" in out


@pytest.mark.asyncio
async def test_add_credits_unknown_user(uow_factory, seed, capsys):
    assert await add_credits(uow_factory, "nobody@example.com", 5) == 1
    assert "User not found" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_recover_stale_dry_run(uow_factory, seed, creation_service, capsys):
    created = await creation_service.initiate(
        seed.creator,
        {"server_id": 1, "method": "txt2img", "creation_token": "tok_cli_000000001"},
    )
    async with await uow_factory() as uow:
        image = await uow.created_images.get_by_id(created["id"])
        meta = image.creation_meta
        meta.timeout_at = to_iso(utcnow() - timedelta(minutes=1))
        image.set_meta(meta)

    assert await recover_stale(uow_factory, limit=100, dry_run=True) == 0
    out = capsys.readouterr().out
    assert "Stale creations: 1" in out
    assert "[DRY RUN]" in out

    assert await recover_stale(uow_factory, limit=100, dry_run=False) == 0
    assert "[DRY RUN]" not in capsys.readouterr().out

    async with await uow_factory() as uow:
        assert (await uow.created_images.get_by_id(created["id"])).status.value == "failed"
