"""Test configuration: importable repo root and a synthetic Rich header
builder."""

import struct
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent

root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)

DOS_HEADER = b'MZ' + b'\0' * 62
DANS = 0x536e6144


def build_rich_buffer(products, key, stub=b'', trailer=b'PE\0\0',
                      extra_words=()):
    """Assemble DOS header + stub + masked header + "Rich" + key + trailer.

    products is a list of (build_number, product_id, object_count); the
    masked DanS lands at offset 64 + len(stub). extra_words are appended
    (unmasked values) after the products, to produce malformed lengths.
    """
    words = [DANS, 0, 0, 0]
    for build_number, product_id, object_count in products:
        words += [product_id << 16 | build_number, object_count]
    words += list(extra_words)
    masked = struct.pack('<%dL' % len(words), *[w ^ key for w in words])
    return (DOS_HEADER + stub + masked + b'Rich' + struct.pack('<L', key) +
            trailer)


@pytest.fixture
def build_rich():
    return build_rich_buffer
