from json import JSONDecodeError

import pytest

from medgraph.services.ai_response_parser import parse_model_json


def test_parses_code_fenced_json():
    raw = """```json
    {"nodes": [], "edges": []}
    ```"""
    parsed = parse_model_json(raw)
    assert parsed == {"nodes": [], "edges": []}


def test_ignores_prose_around_payload():
    raw = 'Here is the graph you asked for:\n{"nodes": [{"id": "n1"}], "edges": []}\nLet me know!'
    parsed = parse_model_json(raw)
    assert parsed["nodes"] == [{"id": "n1"}]


def test_drops_trailing_commas():
    raw = '{"nodes": [{"id": "n1", "label": "Asthma",},], "edges": [],}'
    parsed = parse_model_json(raw)
    assert parsed["nodes"][0]["label"] == "Asthma"


@pytest.mark.parametrize(
    "raw, expected",
    [
        (
            r'{"nodes": [{"id": "n1", "data": {"note": "BP 120\80"}}], "edges": []}',
            "BP 120\\80",
        ),
        (
            r'{"nodes": [{"id": "n1", "data": {"note": "ratio \\ dose"}}], "edges": []}',
            "ratio \\ dose",
        ),
    ],
)
def test_escapes_problematic_backslashes(raw, expected):
    parsed = parse_model_json(raw)
    assert parsed["nodes"][0]["data"]["note"] == expected


def test_drops_thought_signature():
    raw = r'{"nodes": [], "edges": [], "thought-signature": {"id": "abc"}}'
    parsed = parse_model_json(raw)
    assert "thought-signature" not in parsed


def test_strips_byte_order_mark():
    parsed = parse_model_json('\ufeff{"nodes": [], "edges": []}')
    assert parsed == {"nodes": [], "edges": []}


@pytest.mark.parametrize("raw", ["", "   ", "not json at all"])
def test_unparseable_payload_raises(raw):
    with pytest.raises(JSONDecodeError):
        parse_model_json(raw)
