import pytest

from medreport.errors import ResponseParseError
from medreport.repair import extract_json_object, looks_like_refusal, remove_trailing_commas, strip_code_fences


def test_plain_object_parses_without_repair():
    obj, repaired = extract_json_object('{"a": 1, "b": [1, 2]}')
    assert obj == {"a": 1, "b": [1, 2]}
    assert repaired is False


def test_code_fences_and_chatter_are_ignored():
    text = 'Here is the analysis:\n```json\n{"findings": []}\n```\nLet me know if you need more.'
    obj, repaired = extract_json_object(text)
    assert obj == {"findings": []}
    assert repaired is False


def test_strip_code_fences():
    assert strip_code_fences("```json\n{}\n```").strip() == "{}"


def test_braces_inside_strings_do_not_end_the_object():
    obj, _ = extract_json_object('{"summary": "a } tricky { value", "n": 2} trailing')
    assert obj == {"summary": "a } tricky { value", "n": 2}


def test_trailing_commas_are_removed():
    obj, repaired = extract_json_object('{"a": [1, 2,], "b": {"c": 3,},}')
    assert obj == {"a": [1, 2], "b": {"c": 3}}
    assert repaired is True


def test_remove_trailing_commas_leaves_strings_alone():
    assert remove_trailing_commas('{"a": ",}"}') == '{"a": ",}"}'


def test_truncated_object_is_closed():
    text = '{"findings": [{"category": "Brain", "description": "Acute infar'
    obj, repaired = extract_json_object(text)
    assert repaired is True
    assert obj["findings"][0]["category"] == "Brain"
    assert obj["findings"][0]["description"].startswith("Acute")


def test_truncated_after_key_backs_off_to_last_complete_member():
    text = '{"impression": {"summary": "ok"}, "findings": [{"category": "Brain"}], "medicalTerms": [{"term":'
    obj, repaired = extract_json_object(text)
    assert repaired is True
    assert obj["impression"] == {"summary": "ok"}
    assert obj["findings"] == [{"category": "Brain"}]


def test_no_object_raises_parse_error():
    with pytest.raises(ResponseParseError) as exc:
        extract_json_object("There is nothing structured here.")
    assert exc.value.status_code == 500
    assert exc.value.hint
    assert "nothing structured" in exc.value.details


def test_garbage_object_raises_parse_error():
    with pytest.raises(ResponseParseError):
        extract_json_object("{this is: not json}")


def test_refusal_detection_only_looks_before_json():
    assert looks_like_refusal("I'm sorry, but I can't assist with that request.")
    assert looks_like_refusal("I’m unable to help with this image.")
    assert not looks_like_refusal('{"notes": "I cannot rule out a small bleed."}')
    assert not looks_like_refusal("")


def test_malformed_object_does_not_fall_back_to_a_nested_object():
    text = '{"patientInfo": {"name": "A"}, "findings": [{"description": "Nodule"}], // note\n "impression": "x"}'
    with pytest.raises(ResponseParseError):
        extract_json_object(text)


def test_later_object_is_used_after_a_malformed_one():
    text = 'Draft: {"a": {"b": 1}, oops}\nFinal: {"findings": []}'
    obj, repaired = extract_json_object(text)
    assert obj == {"findings": []}
    assert repaired is False
