from blindtest.services.roster import Roster


def test_join_creates_player_with_zero_score():
    roster = Roster()
    player, reconnected = roster.join("s1", "Alice")
    assert not reconnected
    assert player.score == 0
    assert roster.get("s1") is player


def test_rejoin_by_name_keeps_score_and_ban():
    roster = Roster()
    alice, _ = roster.join("s1", "Alice")
    alice.score = 700
    alice.banned = True
    roster.mark_offline("s1")

    again, reconnected = roster.join("s2", "Alice")
    assert reconnected
    assert again is alice
    assert again.sid == "s2"
    assert again.score == 700
    assert again.banned
    assert not again.offline
    assert roster.get("s1") is None
    assert len(roster) == 1


def test_rekey_keeps_creation_order():
    roster = Roster()
    roster.join("a1", "Alice")
    roster.join("b1", "Bob")
    roster.join("a2", "Alice")
    assert [p["name"] for p in roster.serialize()] == ["Alice", "Bob"]


def test_offline_players_stay_on_scoreboard():
    roster = Roster()
    roster.join("s1", "Alice")
    roster.mark_offline("s1")
    assert roster.serialize() == [
        {"id": "s1", "name": "Alice", "score": 0, "banned": False, "offline": True}
    ]


def test_serialize_hides_persistence_key():
    roster = Roster()
    player, _ = roster.join("s1", "Alice")
    player.player_key = "17"
    assert "player_key" not in roster.serialize()[0]


def test_standings_sort_by_score_with_stable_ties():
    roster = Roster()
    for sid, name, score in [("1", "Ann", 100), ("2", "Ben", 300), ("3", "Cid", 100), ("4", "Dee", 0)]:
        player, _ = roster.join(sid, name)
        player.score = score
    assert [p["name"] for p in roster.standings()] == ["Ben", "Ann", "Cid", "Dee"]


def test_reset_scores_keeps_membership():
    roster = Roster()
    for sid, name in [("1", "Ann"), ("2", "Ben")]:
        player, _ = roster.join(sid, name)
        player.score = 250
    roster.reset_scores()
    assert [(p["name"], p["score"]) for p in roster.serialize()] == [("Ann", 0), ("Ben", 0)]


def test_unknown_connection_is_ignored():
    roster = Roster()
    assert roster.ban("nope") is None
    assert roster.mark_offline("nope") is None


def test_connection_switching_names_keeps_index_consistent():
    roster = Roster()
    alice, _ = roster.join("s1", "Alice")
    bob, _ = roster.join("s1", "Bob")
    assert alice.offline
    assert roster.get("s1") is bob

    again, reconnected = roster.join("s2", "Alice")
    assert reconnected
    assert again is alice
    assert not alice.offline
    assert roster.get("s1") is bob
    assert roster.get("s2") is alice
    assert len(roster) == 2


def test_rejoin_same_name_same_connection():
    roster = Roster()
    alice, _ = roster.join("s1", "Alice")
    again, reconnected = roster.join("s1", "Alice")
    assert reconnected
    assert again is alice
    assert roster.get("s1") is alice
    assert not alice.offline
