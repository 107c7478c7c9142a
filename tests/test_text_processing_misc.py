from utils import text_processing


def test_extract_json_payload_plain_object():
    assert text_processing.extract_json_payload('{"a": 1}') == {"a": 1}


def test_extract_json_payload_embedded_in_prose():
    text = 'Sure! The result is {"ideas": [{"id": "idea-1"}]} and that is all.'
    assert text_processing.extract_json_payload(text) == {"ideas": [{"id": "idea-1"}]}


def test_extract_json_payload_braces_inside_strings():
    text = 'prefix {"text": "a } tricky { value", "n": 2} suffix'
    assert text_processing.extract_json_payload(text) == {
        "text": "a } tricky { value",
        "n": 2,
    }


def test_extract_json_payload_array():
    assert text_processing.extract_json_payload("[1, 2, 3]") == [1, 2, 3]


def test_extract_json_payload_none_for_prose_and_empty():
    assert text_processing.extract_json_payload("no json here") is None
    assert text_processing.extract_json_payload("") is None
    assert text_processing.extract_json_payload("{broken: json") is None


def test_clean_model_response_strips_think_and_fences():
    raw = '<think>planning</think>\n```json\n{"a": 1}\n```'
    assert text_processing.clean_model_response(raw) == '{"a": 1}'


def test_clean_model_response_strips_boilerplate():
    raw = "Here is the chapter:\nThe tide came in.\n\n\n\nLet me know if you need anything else."
    assert text_processing.clean_model_response(raw) == "The tide came in."


def test_clean_model_response_non_string():
    assert text_processing.clean_model_response(None) == ""  # type: ignore[arg-type]


def test_count_words_and_split_paragraphs():
    assert text_processing.count_words("one  two\nthree") == 3
    assert text_processing.count_words(None) == 0
    assert text_processing.split_paragraphs("Para one.\n\n  \nPara two.") == [
        "Para one.",
        "Para two.",
    ]


def test_preview_truncates_and_flattens():
    assert text_processing.preview("a\nb", limit=10) == "a b"
    assert text_processing.preview("x" * 20, limit=5) == "xxxxx..."
