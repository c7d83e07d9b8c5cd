from forestbans.workflows.html_normalize import decode_bytes_auto, minimal_text_fix


def test_decode_bytes_prefers_declared_charset():
    assert decode_bytes_auto(b"caf\xe9", {"Content-Type": "text/html; charset=ISO-8859-1"}) == "café"
    assert decode_bytes_auto(b"") == ""
    assert decode_bytes_auto("Watagan State Forest".encode("utf-8")) == "Watagan State Forest"


def test_minimal_text_fix_repairs_mojibake_and_strips_zero_width():
    assert minimal_text_fix("CafÃ© area​ closed") == "Café area closed"
    assert minimal_text_fix("line one\nline two") == "line one\nline two"
    assert minimal_text_fix(None) == ""
