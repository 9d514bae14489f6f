#!/usr/bin/env python
# Locate, unmask and classify the Rich header of PE files.
# based on code from http://trendystephen.blogspot.be/2008/01/rich-header.html
import argparse
import collections
import logging
import struct
import sys

import pefile
import yaml

import prodids

logger = logging.getLogger(__name__)

# I'm trying not to bury the magic number...
CHECKSUM_MASK = 0x536e6144 # DanS (actually SnaD)
RICH_TEXT = b'Rich'
DANS_TEXT = b'DanS'
RICH_TAIL_LENGTH = 8 # "Rich" + key, the only plaintext part
DOS_HEADER_LENGTH = 0x40
PE_START = 0x3c
PE_FIELD_LENGTH = 4
PROLOGUE_LENGTH = 16 # DanS + 3 padding words
PRODUCT_LENGTH = 8


class RichHeaderError(Exception):
    pass

##
# A convenient exception to raise if the Rich Header doesn't exist.
class RichHeaderNotFoundException(RichHeaderError):
    def __init__(self):
        RichHeaderError.__init__(self, "Rich footer does not appear to exist")


##
# The "Rich" footer is there but no masked "DanS" marker precedes it at a
# position that yields a well-formed header.
class RichLengthUnrecoverableException(RichHeaderError):
    def __init__(self, rich_offset, key, reason):
        RichHeaderError.__init__(
            self, "Rich header at 0x%x (key 0x%08x) has no recoverable "
            "length: %s" % (rich_offset, key, reason))
        self.rich_offset = rich_offset
        self.key = key


class InvalidSpanException(RichHeaderError):
    def __init__(self, span, buffer_length):
        RichHeaderError.__init__(
            self, "%r does not describe a Rich header inside a buffer of "
            "%d bytes" % (span, buffer_length))
        self.span = span


class PEFileException(RichHeaderError):
    def __init__(self, file_name, error):
        RichHeaderError.__init__(self, "%s: %s" % (file_name, error))
        self.file_name = file_name


##
# Byte range of the masked header (DanS up to, not including, "Rich") and
# the key it is masked with.
class HeaderSpan(collections.namedtuple(
        'HeaderSpan', 'start_offset length_bytes key')):
    __slots__ = ()

    @property
    def rich_offset(self):
        return self.start_offset + self.length_bytes

    @property
    def product_count(self):
        return (self.length_bytes - PROLOGUE_LENGTH) // PRODUCT_LENGTH


class ProductEntry(collections.namedtuple(
        'ProductEntry', 'build_number product_id object_count')):
    __slots__ = ()

    @property
    def comp_id(self):
        return self.product_id << 16 | self.build_number

    def classify(self):
        return prodids.classify(self.product_id)


DecodedHeader = collections.namedtuple(
    'DecodedHeader', 'signature padding products')


def rol32(value, count):
    count &= 0x1f
    return ((value << count) & 0xffffffff) | (value >> (32 - count))


def _u32(data, offset):
    return struct.unpack_from('<L', data, offset)[0]


def _searchable(data):
    # bytes, bytearray and mmap have find(); memoryview and friends do not
    if hasattr(data, 'find'):
        return data
    return bytes(data)

##
# Find the Rich header in a buffer holding the start of a PE file.
#
# The DOS stub has no reliable length, so the search for "Rich" starts right
# after the 64-byte DOS header and goes forward one byte at a time (no word
# alignment is assumed). Since there is no length field either, the start is
# found by walking back word by word from "Rich" until a word unmasks to
# "DanS". The padding after DanS unmasks to zero, as may other words, so
# only the signature ends the walk.
# @param data bytes-like object, file offset 0 at index 0
# @returns HeaderSpan
# @throws RichHeaderNotFoundException if there is no "Rich" + key after 0x40
# @throws RichLengthUnrecoverableException if no usable "DanS" precedes it
def locate(data):
    data = _searchable(data)
    rich_offset = data.find(RICH_TEXT, DOS_HEADER_LENGTH)
    if rich_offset == -1 or rich_offset + RICH_TAIL_LENGTH > len(data):
        raise RichHeaderNotFoundException()

    key = _u32(data, rich_offset + len(RICH_TEXT))
    logger.debug("Rich signature at 0x%x, key 0x%08x", rich_offset, key)

    masked_dans = CHECKSUM_MASK ^ key
    for start_offset in range(rich_offset, -1, -4):
        if _u32(data, start_offset) == masked_dans:
            break
    else:
        raise RichLengthUnrecoverableException(
            rich_offset, key, "masked DanS signature not found")

    length_bytes = rich_offset - start_offset
    if length_bytes < PROLOGUE_LENGTH or \
            (length_bytes - PROLOGUE_LENGTH) % PRODUCT_LENGTH:
        raise RichLengthUnrecoverableException(
            rich_offset, key, "DanS at 0x%x gives a length of %d bytes" %
            (start_offset, length_bytes))

    logger.debug("DanS signature at 0x%x, %d masked bytes",
                 start_offset, length_bytes)
    return HeaderSpan(start_offset, length_bytes, key)


def _check_span(data, span):
    start_offset, length_bytes, key = span
    if start_offset < 0 or length_bytes < PROLOGUE_LENGTH or \
            (length_bytes - PROLOGUE_LENGTH) % PRODUCT_LENGTH or \
            start_offset + length_bytes > len(data) or \
            not 0 <= key <= 0xffffffff:
        raise InvalidSpanException(span, len(data))


def _unmask_words(data, span):
    _check_span(data, span)
    count = span.length_bytes // 4
    words = struct.unpack_from('<%dL' % count, data, span.start_offset)
    return [word ^ span.key for word in words]


def _decode(words):
    signature = words[0]
    padding = tuple(words[1:4])
    if any(padding):
        logger.debug("non-zero Rich padding: %r", padding)
    products = tuple(
        ProductEntry(words[i] & 0xffff, words[i] >> 16, words[i + 1])
        for i in range(4, len(words), 2))
    return DecodedHeader(signature, padding, products)

##
# Unmask the header described by span into a new DecodedHeader.
# Products keep their on-disk order.
# @throws InvalidSpanException if span doesn't fit the buffer
def unmask(data, span):
    return _decode(_unmask_words(data, span))


##
# Same as unmask(), but also overwrites the masked bytes of buffer with the
# unmasked ones, so the file image holds its own decoded header afterwards.
# buffer must be writable (bytearray, writable mmap/memoryview) and must not
# be used by anyone else during the call.
def unmask_in_place(buffer, span):
    with memoryview(buffer) as view:
        if view.readonly:
            raise TypeError("cannot unmask a read-only buffer in place")
        words = _unmask_words(view, span)
        struct.pack_into('<%dL' % len(words), view, span.start_offset, *words)
    return _decode(words)


##
# Compute the checksum value that the linker stores as the key.
# The checksum is the sum of all the DOS header/stub bytes rotated by their
# offset and the sum of all compids rotated by their occurrence counts.
# The e_lfanew field is skipped as it's not initialized at checksum
# calculation time.
# @param data Buffer starting at file offset 0
# @param span HeaderSpan of the header
# @param products Decoded ProductEntry sequence
def compute_checksum(data, span, products):
    cksum = span.start_offset
    for i in range(span.start_offset):
        if PE_START <= i < PE_START + PE_FIELD_LENGTH:
            continue
        cksum += rol32(data[i], i)
        cksum &= 0xffffffff

    for product in products:
        cksum += rol32(product.comp_id, product.object_count)
        cksum &= 0xffffffff
    return cksum

##
# Read the part of a PE file that can contain the Rich header, i.e. from
# the start of the file up to e_lfanew. pefile checks the DOS and NT
# headers on the way.
# @param raw Skip the checks and return the whole file
# @throws PEFileException if pefile rejects the file
def load_file_header(file_name, raw=False):
    with open(file_name, 'rb') as f:
        data = f.read()
    if raw:
        return data

    try:
        pe = pefile.PE(data=data, fast_load=True)
    except pefile.PEFormatError as e:
        raise PEFileException(file_name, e)
    end = pe.DOS_HEADER.e_lfanew
    pe.close()
    return data[:end]

##
# This class assists in parsing the Rich Header from PE Files.
# The Rich Header is the section in the PE file following the dos stub but
# preceding the lfa_new header which is inserted by link.exe when building with
# the Microsoft Compilers.  The Rich Header contains the following:
# <pre>
# marker, checksum, checksum, checksum,
# R_compid_i, R_occurrence_i,
# R_compid_i+1, R_occurrence_i+1, ...
# R_compid_N-1, R_occurrence_N-1, Rich, checksum
#
# marker = checksum XOR 0x536e6144
# R_compid_i is the ith compid XORed with the checksum
# R_occurrence_i is the ith occurrence  XORed with the checksum
# Rich = the text string 'Rich'
# </pre>
# @see compute_checksum for the checksum calculation
class ParsedRichHeader:
    ##
    # Creates a ParsedRichHeader from the specified PE File.
    # @throws RichHeaderNotFoundException if the file does not contain a rich header
    # @param file_name The PE File to be parsed
    # @param raw Scan the whole file without checking its PE headers
    def __init__(self, file_name, raw=False):
        ## The file that was parsed
        self.file_name = file_name
        self._parse(load_file_header(file_name, raw))

    @classmethod
    def from_data(cls, data, file_name=None):
        self = cls.__new__(cls)
        self.file_name = file_name
        self._parse(data)
        return self

    def _parse(self, data):
        ## HeaderSpan of the masked header
        self.span = locate(data)
        ## DecodedHeader
        self.header = unmask(data, self.span)
        ## ProductEntry tuple in on-disk order
        self.products = self.header.products
        ## The checksum computed from the data, for comparison with the key
        self.checksum = compute_checksum(data, self.span, self.products)
        self.valid_checksum = self.checksum == self.span.key

    def to_dict(self):
        products = []
        for product in self.products:
            name, release = product.classify()
            products.append({
                'build_number': product.build_number,
                'product_id': product.product_id,
                'object_count': product.object_count,
                'toolchain_name': name,
                'vs_release': release,
            })
        return {
            'file_name': self.file_name,
            'offset': self.span.start_offset,
            'length': self.span.length_bytes,
            'key': '0x%08x' % self.span.key,
            'checksum': '0x%08x' % self.checksum,
            'valid_checksum': self.valid_checksum,
            'products': products,
        }


def format_report(ph):
    lines = [
        "%s: Rich header at 0x%x, %d bytes, key 0x%08x" % (
            ph.file_name, ph.span.start_offset, ph.span.length_bytes,
            ph.span.key),
        "PRODID   name                     build count  release",
    ]
    for product in ph.products:
        name, release = product.classify()
        lines.append('%6d   %-24s %5d %5d  %s' % (
            product.product_id, name or "<unknown>", product.build_number,
            product.object_count, release or "<unknown>"))
    if ph.valid_checksum:
        lines.append("Checksum valid")
    else:
        lines.append("Checksum not valid! (computed 0x%08x)" % ph.checksum)
    return '\n'.join(lines)


def logging_level(string):
    """Convert a string to a logging level"""
    if string.isnumeric():
        return int(string)
    level = getattr(logging, string.upper(), None)
    if not isinstance(level, int):
        raise argparse.ArgumentTypeError("invalid log level {}".format(string))
    return level


def main(argv=None):
    """Program entry point"""
    parser = argparse.ArgumentParser(
        description="Decode the Rich header of PE files")
    parser.add_argument('files', metavar='FILE', nargs='+',
                        help="PE file to inspect")
    parser.add_argument('-l', '--level', action='store',
                        type=logging_level, default=logging.INFO,
                        help="set logging level")
    parser.add_argument('-r', '--raw', action='store_true',
                        help="scan the whole file without checking PE headers")
    parser.add_argument('-t', '--time', action='store_true',
                        help="print time information")
    parser.add_argument('-y', '--yaml', action='store_true',
                        help="dump the headers as YAML")
    args = parser.parse_args(argv)

    logfmt = '[%(levelname)s] %(name)s: %(message)s'
    if args.time:
        logfmt = '%(asctime)s ' + logfmt
    logging.basicConfig(format=logfmt, level=args.level,
                        datefmt='%Y-%m-%d %H:%M:%S')

    status = 0
    reports = []
    for file_name in args.files:
        try:
            ph = ParsedRichHeader(file_name, raw=args.raw)
        except RichHeaderNotFoundException:
            logger.info("%s: no Rich header", file_name)
            continue
        except (RichHeaderError, OSError) as e:
            logger.error("%s: %s", file_name, e)
            status = 1
            continue

        if args.yaml:
            reports.append(ph.to_dict())
        else:
            print(format_report(ph))

    if args.yaml and reports:
        sys.stdout.write(yaml.safe_dump(reports, default_flow_style=False))
    return status


if __name__ == '__main__':
    sys.exit(main())
