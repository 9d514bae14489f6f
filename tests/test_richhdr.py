import struct

import pytest

import richhdr
from richhdr import (
    HeaderSpan,
    InvalidSpanException,
    ParsedRichHeader,
    ProductEntry,
    RichHeaderNotFoundException,
    RichLengthUnrecoverableException,
    locate,
    unmask,
    unmask_in_place,
)

KEY = 0x12345678

PRODUCTS = [
    (0x7809, 0x0093, 11),
    (0x6030, 0x0105, 142),
    (0x6030, 0x0104, 17),
    (0x6030, 0x0102, 1),
]


def rich_checksum(prefix, products):
    def rol(value, count):
        count %= 32
        return ((value << count) | (value >> (32 - count))) & 0xffffffff

    cksum = len(prefix)
    for i, byte in enumerate(prefix):
        if 0x3c <= i < 0x40:
            continue
        cksum += rol(byte, i)
    for build_number, product_id, object_count in products:
        cksum += rol(product_id << 16 | build_number, object_count)
    return cksum & 0xffffffff


def test_concrete_scenario(build_rich):
    data = build_rich([(0x1234, 0x00aa, 7)], 0x12345678)

    span = locate(data)
    assert span == HeaderSpan(64, 24, 0x12345678)

    header = unmask(data, span)
    assert header.products == (ProductEntry(0x1234, 0x00aa, 7),)
    name, release = header.products[0].classify()
    assert name == "Utc1600_C"
    assert release == "Visual Studio 2010 10.00"


@pytest.mark.parametrize('stub', [b'', b'\x0e\x1f\xba', b'\xcc' * 64])
def test_round_trip(build_rich, stub):
    data = build_rich(PRODUCTS, KEY, stub=stub)

    span = locate(data)
    assert span.start_offset == 64 + len(stub)
    assert span.key == KEY
    assert span.product_count == len(PRODUCTS)
    assert data[span.rich_offset:span.rich_offset + 4] == b'Rich'

    header = unmask(data, span)
    assert header.signature == struct.unpack('<L', b'DanS')[0]
    assert header.padding == (0, 0, 0)
    assert [tuple(p) for p in header.products] == PRODUCTS


def test_deterministic(build_rich):
    data = build_rich(PRODUCTS, KEY)
    assert locate(data) == locate(data)
    assert unmask(data, locate(data)) == unmask(data, locate(data))


def test_minimal_header(build_rich):
    data = build_rich([], KEY)
    span = locate(data)
    assert span.length_bytes == 16
    assert span.product_count == 0
    assert unmask(data, span).products == ()


def test_key_at_buffer_end(build_rich):
    data = build_rich(PRODUCTS, KEY, trailer=b'')
    assert data.endswith(struct.pack('<L', KEY))
    assert locate(data).key == KEY

    with pytest.raises(RichHeaderNotFoundException):
        locate(data[:-1])


def test_rich_inside_dos_header_ignored():
    data = b'MZ' + b'\0' * 6 + b'Rich' + struct.pack('<L', KEY)
    data += b'\0' * (100 - len(data))
    with pytest.raises(RichHeaderNotFoundException):
        locate(data)


def test_short_buffer():
    with pytest.raises(RichHeaderNotFoundException):
        locate(b'MZ')


def test_no_rich_header():
    with pytest.raises(RichHeaderNotFoundException):
        locate(b'MZ' + b'\x90' * 400)


def test_zero_words_do_not_stop_scan(build_rich):
    # words that unmask to zero both in the products and right before DanS
    products = [(0, 0, 0)] + PRODUCTS
    stub = struct.pack('<LL', KEY, KEY)
    data = build_rich(products, KEY, stub=stub)

    span = locate(data)
    assert span.start_offset == 64 + len(stub)
    assert [tuple(p) for p in unmask(data, span).products] == products


def test_closest_dans_wins(build_rich):
    decoy = build_rich([(1, 2, 3)], KEY, trailer=b'')[64:-8]
    data = build_rich(PRODUCTS, KEY, stub=decoy)

    span = locate(data)
    assert span.start_offset == 64 + len(decoy)
    assert span.product_count == len(PRODUCTS)


def test_missing_dans(build_rich):
    data = bytearray(build_rich(PRODUCTS, KEY))
    data[64:68] = b'\xff\xff\xff\xff'
    with pytest.raises(RichLengthUnrecoverableException) as exc:
        locate(bytes(data))
    assert exc.value.key == KEY
    assert exc.value.rich_offset == 64 + 16 + 8 * len(PRODUCTS)


def test_malformed_length(build_rich):
    data = build_rich(PRODUCTS, KEY, extra_words=[0])
    with pytest.raises(RichLengthUnrecoverableException):
        locate(data)


def test_rich_word_itself_unmasks_to_dans(build_rich):
    key = struct.unpack('<L', b'Rich')[0] ^ struct.unpack('<L', b'DanS')[0]
    data = build_rich(PRODUCTS, key)
    with pytest.raises(RichLengthUnrecoverableException):
        locate(data)


def test_memoryview_input(build_rich):
    data = build_rich(PRODUCTS, KEY)
    view = memoryview(data)
    span = locate(view)
    assert span == locate(data)
    assert unmask(view, span) == unmask(data, span)


@pytest.mark.parametrize('span', [
    HeaderSpan(-4, 16, KEY),
    HeaderSpan(64, 20, KEY),
    HeaderSpan(64, 8, KEY),
    HeaderSpan(64, 16, 1 << 32),
    HeaderSpan(200, 16, KEY),
])
def test_invalid_span(build_rich, span):
    data = build_rich([], KEY)
    with pytest.raises(InvalidSpanException):
        unmask(data, span)


def test_span_replayed_on_truncated_buffer(build_rich):
    data = build_rich(PRODUCTS, KEY)
    span = locate(data)
    with pytest.raises(InvalidSpanException):
        unmask(data[:span.rich_offset - 4], span)


def test_unmask_in_place(build_rich):
    original = build_rich(PRODUCTS, KEY)
    buffer = bytearray(original)
    span = locate(buffer)

    header = unmask_in_place(buffer, span)
    assert header == unmask(original, span)

    start = span.start_offset
    assert buffer[start:start + 16] == b'DanS' + b'\0' * 12
    build_number, product_id, object_count = PRODUCTS[0]
    assert buffer[start + 16:start + 24] == struct.pack(
        '<HHL', build_number, product_id, object_count)
    # the tail is untouched
    assert buffer[span.rich_offset:] == original[span.rich_offset:]


def test_unmask_in_place_read_only(build_rich):
    data = build_rich(PRODUCTS, KEY)
    with pytest.raises(TypeError):
        unmask_in_place(data, locate(data))


def test_non_zero_padding_is_not_an_error(build_rich):
    data = bytearray(build_rich(PRODUCTS, KEY))
    data[68:72] = struct.pack('<L', KEY ^ 5)
    header = unmask(bytes(data), locate(bytes(data)))
    assert header.padding == (5, 0, 0)
    assert len(header.products) == len(PRODUCTS)


def test_product_entry_comp_id():
    assert ProductEntry(0x1234, 0x00aa, 7).comp_id == 0x00aa1234


def test_checksum_valid(build_rich):
    prefix = build_rich(PRODUCTS, 0)[:64]
    key = rich_checksum(prefix, PRODUCTS)
    data = build_rich(PRODUCTS, key)

    ph = ParsedRichHeader.from_data(data)
    assert ph.checksum == key
    assert ph.valid_checksum


def test_checksum_invalid(build_rich):
    ph = ParsedRichHeader.from_data(build_rich(PRODUCTS, KEY))
    assert ph.checksum != KEY
    assert not ph.valid_checksum


def test_checksum_skips_e_lfanew(build_rich):
    data = build_rich(PRODUCTS, KEY)
    patched = bytearray(data)
    patched[0x3c:0x40] = b'\x80\x00\x00\x00'
    span = locate(data)
    products = unmask(data, span).products
    assert richhdr.compute_checksum(data, span, products) == \
        richhdr.compute_checksum(patched, span, products)


def test_to_dict(build_rich):
    ph = ParsedRichHeader.from_data(
        build_rich([(0x1234, 0x00aa, 7)], KEY), file_name='a.exe')
    report = ph.to_dict()
    assert report['file_name'] == 'a.exe'
    assert report['offset'] == 64
    assert report['length'] == 24
    assert report['key'] == '0x12345678'
    assert report['products'] == [{
        'build_number': 0x1234,
        'product_id': 0x00aa,
        'object_count': 7,
        'toolchain_name': 'Utc1600_C',
        'vs_release': 'Visual Studio 2010 10.00',
    }]


def test_format_report(build_rich):
    ph = ParsedRichHeader.from_data(
        build_rich([(0x1234, 0x00aa, 7), (1, 0x4000, 2)], KEY),
        file_name='a.exe')
    report = richhdr.format_report(ph)
    assert report.startswith('a.exe: Rich header at 0x40')
    assert 'Utc1600_C' in report
    assert '<unknown>' in report
    assert report.splitlines()[-1].startswith('Checksum not valid!')


def test_parsed_rich_header_from_file(build_rich, tmp_path):
    path = tmp_path / 'sample.exe'
    path.write_bytes(build_rich(PRODUCTS, KEY))

    ph = ParsedRichHeader(str(path), raw=True)
    assert ph.file_name == str(path)
    assert ph.span.key == KEY
    assert len(ph.products) == len(PRODUCTS)


def test_load_file_header_stops_at_e_lfanew(build_rich, tmp_path, monkeypatch):
    data = build_rich(PRODUCTS, KEY, trailer=b'PE\0\0' + b'\0' * 64)
    e_lfanew = len(data) - 68

    class FakeDosHeader:
        pass

    class FakePE:
        def __init__(self, data=None, fast_load=False):
            self.DOS_HEADER = FakeDosHeader()
            self.DOS_HEADER.e_lfanew = e_lfanew

        def close(self):
            pass

    monkeypatch.setattr(richhdr.pefile, 'PE', FakePE)
    path = tmp_path / 'sample.exe'
    path.write_bytes(data)

    header = richhdr.load_file_header(str(path))
    assert header == data[:e_lfanew]
    assert locate(header).key == KEY


def test_load_file_header_rejects_non_pe(tmp_path):
    path = tmp_path / 'junk.bin'
    path.write_bytes(b'\0' * 256)
    with pytest.raises(richhdr.PEFileException):
        richhdr.load_file_header(str(path))
