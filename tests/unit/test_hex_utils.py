import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from utils.hex_utils import HexParser


@pytest.mark.parametrize("text", ["ff ff 08", "ffff08", "FF:FF:08", "0xff 0xff 0x08", "ff-ff,08"])
def test_parse_hex_formats(text):
    assert HexParser.parse_hex(text) == b"\xff\xff\x08"


def test_parse_hex_errors():
    with pytest.raises(ValueError):
        HexParser.parse_hex("fff")
    with pytest.raises(ValueError):
        HexParser.parse_hex("zz")
    assert HexParser.try_parse_hex("zz") is None


def test_format_hex():
    assert HexParser.format_hex(b"\xff\xff\x08") == "ff ff 08"
    assert HexParser.format_hex(b"\xff\xff\x08", separator="") == "ffff08"
    assert HexParser.format_hex(b"\x01\x02\x03", limit=2) == "01 02 ... (3 bytes)"
    assert HexParser.format_hex(b"") == ""
