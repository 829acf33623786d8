from multimodal.models import MergedItem
from services.merge_output import (
    RecoveryStage,
    ScratchCandidate,
    fallback_value,
    parse_merge_output,
    reconcile_items,
    round_timestamp,
    sanitize_json_text,
)


LAPTOP = ScratchCandidate(name="Dell Laptop", description="Black laptop", timestamp=11.9, estimated_value=900)


def test_transcript_item_keeps_its_timestamp_and_takes_scratch_value():
    items = reconcile_items([MergedItem(name="Laptop", description="Laptop on the desk", timestamp=12.3)], [LAPTOP])

    assert len(items) == 1
    assert items[0].name == "Laptop"
    assert items[0].timestamp == 12.3
    assert items[0].estimated_value == 900


def test_scratch_echo_collapses_into_transcript_item():
    items = reconcile_items(
        [
            MergedItem(name="Dell Laptop", timestamp=11.9, estimated_value=850),
            MergedItem(name="Laptop", description="Work laptop", timestamp=12.3),
        ],
        [LAPTOP],
    )

    assert len(items) == 1
    assert (items[0].name, items[0].timestamp, items[0].estimated_value) == ("Laptop", 12.3, 900)
    assert items[0].description == "Work laptop"


def test_scratch_value_beats_model_value_and_model_value_beats_fallback():
    with_scratch = reconcile_items([MergedItem(name="Laptop", timestamp=12.3, estimated_value=1500)], [LAPTOP])
    assert with_scratch[0].estimated_value == 900

    model_only = reconcile_items([MergedItem(name="Oak Bookshelf", estimated_value=220)], [LAPTOP])
    assert model_only[0].estimated_value == 220


def test_value_is_never_missing():
    items = reconcile_items(
        [
            MergedItem(name="Sectional Sofa", timestamp=2.04),
            MergedItem(name="Mystery Box", estimated_value=0),
            MergedItem(name="Television", estimated_value=None),
        ],
        [],
    )
    assert [item.estimated_value for item in items] == [400.0, 50.0, 500.0]
    assert all(item.estimated_value > 0 for item in items)
    assert items[0].timestamp == 2.0
    assert items[1].timestamp == 0.0


def test_closest_timestamp_wins_between_overlapping_scratch_items():
    early = ScratchCandidate(name="Table Lamp", timestamp=3.0, estimated_value=40)
    late = ScratchCandidate(name="Floor Lamp", timestamp=30.0, estimated_value=120)

    items = reconcile_items([MergedItem(name="Lamp", timestamp=28.7)], [early, late])
    assert items[0].estimated_value == 120


def test_missing_timestamp_comes_from_matched_scratch_item():
    items = reconcile_items([MergedItem(name="Laptop computer")], [LAPTOP])
    assert items[0].timestamp == 11.9


def test_fallback_prices_by_category():
    assert fallback_value("MacBook Pro") == 500.0
    assert fallback_value("Refrigerator") == 700.0
    assert fallback_value("Lamp", "sits on a desk") == 75.0
    assert fallback_value("Thing") == 50.0
    assert round_timestamp(7.26) == 7.3
    assert round_timestamp(None) is None


def test_ladder_direct_parse():
    items, stage = parse_merge_output('{"items": [{"name": "Guitar", "timestamp": 4.0}]}', [LAPTOP])
    assert stage == RecoveryStage.DIRECT
    assert [item.name for item in items] == ["Guitar"]


def test_ladder_sanitizes_common_defects():
    raw = '```json\n{"items": [{"name": "Lamp", "timestamp": 3.1000000000000001234,}, {"name": "Rug"} {"name": "Vase"},]}\n```'
    assert '"timestamp": 3.10}' in sanitize_json_text(raw)

    items, stage = parse_merge_output(raw, [LAPTOP])
    assert stage == RecoveryStage.SANITIZED
    assert [item.name for item in items] == ["Lamp", "Rug", "Vase"]


def test_ladder_regex_extraction():
    raw = 'Here you go: {"name": "Piano", "description": "Upright piano", "timestamp": 9.2 ... {"name": "Stool"'
    items, stage = parse_merge_output(raw, [LAPTOP])
    assert stage == RecoveryStage.REGEX
    assert [(item.name, item.description) for item in items] == [("Piano", "Upright piano"), ("Stool", "")]


def test_ladder_falls_back_to_scratch_items():
    items, stage = parse_merge_output("I could not find anything.", [LAPTOP])
    assert stage == RecoveryStage.SCRATCH
    assert [(item.name, item.timestamp, item.estimated_value) for item in items] == [("Dell Laptop", 11.9, 900)]

    items, stage = parse_merge_output(None, [])
    assert (items, stage) == ([], RecoveryStage.SCRATCH)
