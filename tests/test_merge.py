import json

from transit_proxy import load_extra_boards, merge_extra_departures


def board(name, *departures):
    return {"place": {"name": name}, "departures": list(departures)}


def test_merge_appends_extras_in_order():
    response = {"boards": [board("A", {"id": "d1"})]}
    extras = [board("A", {"id": "d2"}, {"id": "d3"})]

    merged = merge_extra_departures(response, extras)

    assert merged is response
    assert response == {"boards": [board("A", {"id": "d1"}, {"id": "d2"}, {"id": "d3"})]}


def test_merge_noop_when_dataset_empty():
    response = {"boards": [board("A", {"id": "d1"}), board("B")]}
    expected = json.loads(json.dumps(response))

    merge_extra_departures(response, [])

    assert response == expected


def test_merge_first_match_wins():
    response = {"boards": [board("A", {"id": "d1"})]}
    extras = [board("A", {"id": "first"}), board("A", {"id": "second"})]

    merge_extra_departures(response, extras)

    assert response["boards"][0]["departures"] == [{"id": "d1"}, {"id": "first"}]


def test_merge_matches_exact_names_only():
    response = {"boards": [board("Central Station", {"id": "d1"}), board("central")]}
    extras = [board("Central", {"id": "x"})]

    merge_extra_departures(response, extras)

    assert response["boards"][0]["departures"] == [{"id": "d1"}]
    assert response["boards"][1]["departures"] == []


def test_merge_tolerates_missing_fields():
    extras = [board("A", {"id": "x"})]
    response = {
        "boards": [
            {"departures": [{"id": "d1"}]},
            {"place": {}},
            {"place": {"name": "A"}},
            "junk",
        ]
    }

    merge_extra_departures(response, extras)

    assert response["boards"][0] == {"departures": [{"id": "d1"}]}
    assert response["boards"][2]["departures"] == [{"id": "x"}]
    assert merge_extra_departures({"notices": []}, extras) == {"notices": []}
    assert merge_extra_departures(None, extras) is None


def test_merge_does_not_share_extra_records():
    extras = [board("A", {"id": "x"})]
    response = {"boards": [board("A")]}

    merge_extra_departures(response, extras)
    response["boards"][0]["departures"][0]["id"] = "changed"

    assert extras[0]["departures"] == [{"id": "x"}]


def test_load_extra_boards(tmp_path):
    path = tmp_path / "extra.json"
    path.write_text(
        json.dumps(
            {
                "boards": [
                    board("A", {"id": "x"}),
                    {"place": {"name": "B"}},
                    {"place": {}, "departures": []},
                    board("C"),
                ]
            }
        ),
        encoding="utf-8",
    )

    boards = load_extra_boards(str(path))

    assert [b["place"]["name"] for b in boards] == ["A", "C"]


def test_load_extra_boards_failures_degrade_to_empty(tmp_path):
    assert load_extra_boards(str(tmp_path / "missing.json")) == []

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    assert load_extra_boards(str(broken)) == []

    wrong_shape = tmp_path / "list.json"
    wrong_shape.write_text("[]", encoding="utf-8")
    assert load_extra_boards(str(wrong_shape)) == []

    no_boards = tmp_path / "empty.json"
    no_boards.write_text('{"boards": {}}', encoding="utf-8")
    assert load_extra_boards(str(no_boards)) == []
