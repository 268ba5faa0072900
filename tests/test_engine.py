import asyncio

import pytest

from rogue_crash.engine import create_local_game
from rogue_crash.errors import ContractRevert
from rogue_crash.models import RoundOutcome
from rogue_crash.utils import ZERO_HASH, commit_server_seed, compute_winnings

from conftest import OWNER, OTHER, PLAYER, TOKEN, place


async def test_bet_requires_allowance(game, player_store):
    with pytest.raises(ContractRevert, match="Insufficient allowance"):
        await player_store.place_bet(TOKEN, 1)


async def test_bet_creates_round(game, player_store):
    round_id = await place(game, PLAYER, TOKEN, 12345)

    assert round_id == 1
    rnd = await player_store.get_round(round_id)
    assert rnd.exists
    assert rnd.player == PLAYER
    assert rnd.bet_amount == TOKEN
    assert rnd.client_seed == 12345
    assert rnd.server_seed_hash == ZERO_HASH
    assert rnd.outcome is RoundOutcome.PENDING
    assert game.token.balance(PLAYER) == 99 * TOKEN
    assert await player_store.get_player_rounds(PLAYER) == [1]
    assert await player_store.current_round_id() == 1


@pytest.mark.parametrize("amount", [10**15 - 1, 10 * TOKEN + 1])
async def test_bet_outside_limits(game, amount):
    with pytest.raises(ContractRevert, match="Invalid bet amount"):
        await place(game, PLAYER, amount, 1)
    assert await game.connect(PLAYER).current_round_id() == 0


async def test_bet_without_funds(game):
    with pytest.raises(ContractRevert, match="Insufficient balance"):
        await place(game, OTHER, TOKEN, 1)


async def test_reveal_is_owner_only(game, player_store):
    round_id = await place(game, PLAYER, TOKEN, 12345)
    with pytest.raises(ContractRevert, match="Not owner"):
        await player_store.reveal_crash(round_id, 67890)


async def test_reveal_derives_crash_point(game, operator):
    round_id = await place(game, PLAYER, TOKEN, 12345)
    receipt = await operator.reveal_crash(round_id, 67890)

    event = receipt.find("CrashRevealed")
    assert event.args["crashMultiplier"] == 218
    rnd = await operator.get_round(round_id)
    assert rnd.crash_multiplier == 218
    assert rnd.server_seed == 67890
    assert rnd.outcome is RoundOutcome.REVEALED


async def test_second_reveal_is_a_noop(game, operator):
    round_id = await place(game, PLAYER, TOKEN, 12345)
    await operator.reveal_crash(round_id, 67890)

    receipt = await operator.reveal_crash(round_id, 1)

    assert receipt.events == []
    rnd = await operator.get_round(round_id)
    assert (rnd.server_seed, rnd.crash_multiplier) == (67890, 218)


async def test_reveal_rejects_zero_seed(game, operator):
    round_id = await place(game, PLAYER, TOKEN, 12345)
    with pytest.raises(ContractRevert):
        await operator.reveal_crash(round_id, 0)


async def test_reveal_missing_round(operator):
    with pytest.raises(ContractRevert, match="Round not found"):
        await operator.reveal_crash(5, 1)


async def test_cash_out_before_reveal(game, player_store):
    round_id = await place(game, PLAYER, TOKEN, 12345)
    with pytest.raises(ContractRevert, match="Crash not revealed"):
        await player_store.cash_out(round_id, 150)


async def test_cash_out_pays_winnings(game, operator, player_store):
    round_id = await place(game, PLAYER, TOKEN, 12345)
    await operator.reveal_crash(round_id, 67890)

    receipt = await player_store.cash_out(round_id, 150)

    expected = compute_winnings(TOKEN, 150, 200)
    assert receipt.find("CashedOut").args["winnings"] == expected
    assert receipt.find("RoundSettled").args["won"] is True
    assert game.token.balance(PLAYER) == 99 * TOKEN + expected

    rnd = await player_store.get_round(round_id)
    assert rnd.settled and rnd.won
    assert rnd.cash_out_multiplier == 150
    assert rnd.outcome is RoundOutcome.WON


async def test_cash_out_at_crash_point_is_accepted(game, operator, player_store):
    round_id = await place(game, PLAYER, TOKEN, 12345)
    await operator.reveal_crash(round_id, 67890)

    receipt = await player_store.cash_out(round_id, 218)
    assert receipt.find("CashedOut").args["multiplier"] == 218


async def test_cash_out_above_crash_point(game, operator, player_store):
    round_id = await place(game, PLAYER, TOKEN, 12345)
    await operator.reveal_crash(round_id, 67890)

    with pytest.raises(ContractRevert, match="Multiplier too high"):
        await player_store.cash_out(round_id, 219)

    rnd = await player_store.get_round(round_id)
    assert not rnd.settled
    assert rnd.cash_out_multiplier == 0


async def test_cash_out_below_one(game, operator, player_store):
    round_id = await place(game, PLAYER, TOKEN, 12345)
    await operator.reveal_crash(round_id, 67890)
    with pytest.raises(ContractRevert, match="Invalid multiplier"):
        await player_store.cash_out(round_id, 99)


async def test_cash_out_by_other_account(game, operator):
    round_id = await place(game, PLAYER, TOKEN, 12345)
    await operator.reveal_crash(round_id, 67890)
    with pytest.raises(ContractRevert, match="Not round player"):
        await game.connect(OTHER).cash_out(round_id, 150)


async def test_double_cash_out(game, operator, player_store):
    round_id = await place(game, PLAYER, TOKEN, 12345)
    await operator.reveal_crash(round_id, 67890)
    await player_store.cash_out(round_id, 150)

    with pytest.raises(ContractRevert, match="Already cashed out"):
        await player_store.cash_out(round_id, 120)
    with pytest.raises(ContractRevert, match="Already cashed out"):
        await operator.settle_loss(round_id)


async def test_settle_loss(game, operator, player_store):
    round_id = await place(game, PLAYER, TOKEN, 12345)
    await operator.reveal_crash(round_id, 67890)

    receipt = await operator.settle_loss(round_id)

    assert receipt.find("RoundSettled").args == {"roundId": round_id, "won": False, "payout": 0}
    rnd = await operator.get_round(round_id)
    assert rnd.outcome is RoundOutcome.LOST
    with pytest.raises(ContractRevert, match="Round already settled"):
        await player_store.cash_out(round_id, 120)
    with pytest.raises(ContractRevert, match="Round already settled"):
        await operator.settle_loss(round_id)


async def test_settle_loss_rules(game, operator, player_store):
    round_id = await place(game, PLAYER, TOKEN, 12345)
    with pytest.raises(ContractRevert, match="Crash not revealed"):
        await operator.settle_loss(round_id)
    await operator.reveal_crash(round_id, 67890)
    with pytest.raises(ContractRevert, match="Not owner"):
        await player_store.settle_loss(round_id)


async def test_cash_out_and_settle_race_has_one_winner(game, operator, player_store):
    round_id = await place(game, PLAYER, TOKEN, 12345)
    await operator.reveal_crash(round_id, 67890)

    results = await asyncio.gather(
        player_store.cash_out(round_id, 200),
        operator.settle_loss(round_id),
        return_exceptions=True,
    )

    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], ContractRevert)
    assert failures[0].reason in ("Round already settled", "Already cashed out")
    rnd = await operator.get_round(round_id)
    assert rnd.settled


async def test_insufficient_liquidity():
    game = create_local_game(OWNER, liquidity=0)
    game.token.mint(PLAYER, 10 * TOKEN)
    round_id = await place(game, PLAYER, TOKEN, 12345)
    await game.connect(OWNER).reveal_crash(round_id, 67890)

    # the bet itself is in the pool, but 1.5x of it is not
    with pytest.raises(ContractRevert, match="Insufficient liquidity"):
        await game.connect(PLAYER).cash_out(round_id, 150)


async def test_commitment_is_consumed_and_enforced(game, operator):
    seed_hash = commit_server_seed(67890)
    await operator.commit_server_seed(seed_hash)
    assert await operator.pending_commitments() == 1

    round_id = await place(game, PLAYER, TOKEN, 12345)

    assert await operator.pending_commitments() == 0
    rnd = await operator.get_round(round_id)
    assert rnd.server_seed_hash == seed_hash
    with pytest.raises(ContractRevert, match="Seed does not match commitment"):
        await operator.reveal_crash(round_id, 67891)
    await operator.reveal_crash(round_id, 67890)
    assert (await operator.get_round(round_id)).crash_multiplier == 218


async def test_commit_is_owner_only(player_store):
    with pytest.raises(ContractRevert, match="Not owner"):
        await player_store.commit_server_seed(commit_server_seed(1))


async def test_required_commitment():
    game = create_local_game(OWNER, require_commitment=True)
    game.token.mint(PLAYER, 10 * TOKEN)
    with pytest.raises(ContractRevert, match="No seed commitment"):
        await place(game, PLAYER, TOKEN, 1)


async def test_stats(game, operator, player_store):
    first = await place(game, PLAYER, TOKEN, 12345)
    second = await place(game, PLAYER, 2 * TOKEN, 1)
    await operator.reveal_crash(first, 67890)
    await operator.reveal_crash(second, 1)
    await player_store.cash_out(first, 200)
    await operator.settle_loss(second)

    stats = await operator.get_stats()

    assert stats.total_bets == 3 * TOKEN
    assert stats.total_winnings == compute_winnings(TOKEN, 200, 200)
    assert stats.total_losses == 2 * TOKEN
    assert stats.current_round_id == 2
    assert stats.liquidity == game.token.balance(game.address)


async def test_subscription_receives_events(game, operator):
    subscription = operator.subscribe()
    round_id = await place(game, PLAYER, TOKEN, 12345)

    event = await asyncio.wait_for(subscription.__anext__(), timeout=1)

    assert event.name == "BetPlaced"
    assert event.round_id == round_id
    await subscription.aclose()


async def test_snapshot_is_a_copy(game, operator):
    round_id = await place(game, PLAYER, TOKEN, 12345)
    rnd = await operator.get_round(round_id)
    rnd.settled = True
    assert not (await operator.get_round(round_id)).settled


async def test_unknown_round_snapshot(operator):
    rnd = await operator.get_round(42)
    assert not rnd.exists
    assert rnd.bet_amount == 0
