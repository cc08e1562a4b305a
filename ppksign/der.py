# *-* coding: utf-8 *-*
"""
Minimal DER helpers shared by the CMS builder and the verifier.

pyasn1 does the schema work; the functions here look at raw
tag/length/value octets, which is what Adobe Reader is picky about:
definite, minimal lengths and canonically ordered SET OF members.
"""
from pyasn1.type import univ
from pyasn1.codec.der import encoder

from ppksign.errors import EncodingError

SEQUENCE = 0x30
SET = 0x31
CONTEXT_0 = 0xA0

_CONSTRUCTED = 0x20


def read_tlv(data, offset=0, end=None):
    """
    Parse one DER header.

    :return: (tag, constructed, contents_start, contents_end)
    """
    if end is None:
        end = len(data)
    if offset >= end:
        raise EncodingError("truncated DER at offset %d" % offset)
    tag = data[offset]
    constructed = bool(tag & _CONSTRUCTED)
    i = offset + 1
    if tag & 0x1F == 0x1F:
        # high tag number form
        while True:
            if i >= end:
                raise EncodingError("truncated tag at offset %d" % offset)
            i += 1
            if not data[i - 1] & 0x80:
                break
    if i >= end:
        raise EncodingError("missing length at offset %d" % offset)
    first = data[i]
    i += 1
    if first == 0x80:
        raise EncodingError("indefinite length at offset %d" % offset)
    if first < 0x80:
        length = first
    else:
        n = first & 0x7F
        if n == 0x7F or i + n > end:
            raise EncodingError("bad long form length at offset %d" % offset)
        body = data[i:i + n]
        if body[0] == 0:
            raise EncodingError("non minimal length at offset %d" % offset)
        length = int.from_bytes(body, "big")
        if length < 0x80:
            raise EncodingError("non minimal length at offset %d" % offset)
        i += n
    if i + length > end:
        raise EncodingError(
            "length %d overruns buffer at offset %d" % (length, offset)
        )
    return tag, constructed, i, i + length


def children(data, start=0, end=None):
    """Yield the complete encodings of the TLVs in data[start:end]."""
    if end is None:
        end = len(data)
    i = start
    while i < end:
        _, _, _, stop = read_tlv(data, i, end)
        yield data[i:stop]
        i = stop


def check_der(data):
    """
    Walk every constructed value and reject indefinite or non minimal
    lengths, trailing garbage and overruns.
    """
    data = bytes(data)

    def walk(start, end):
        i = start
        while i < end:
            tag, constructed, cstart, cend = read_tlv(data, i, end)
            if constructed:
                walk(cstart, cend)
            i = cend

    _, constructed, cstart, cend = read_tlv(data)
    if cend != len(data):
        raise EncodingError("%d trailing bytes after DER value" % (len(data) - cend))
    if constructed:
        walk(cstart, cend)
    return True


def _set_key(encoding, width):
    # X.690 11.6: shorter encodings compare as if padded with zero octets
    return encoding.ljust(width, b"\0")


def sort_set_of(encodings):
    encodings = [bytes(e) for e in encodings]
    if not encodings:
        return encodings
    width = max(len(e) for e in encodings)
    return sorted(encodings, key=lambda e: _set_key(e, width))


def is_canonical_set(encoded):
    """True when the members of an encoded SET OF are in DER order."""
    _, constructed, cstart, cend = read_tlv(encoded)
    if not constructed:
        raise EncodingError("not a constructed value")
    members = list(children(encoded, cstart, cend))
    return members == sort_set_of(members)


def as_set(encoded):
    """Retag an implicitly tagged SET OF (e.g. signedAttrs [0]) as universal SET."""
    encoded = bytes(encoded)
    return bytes((SET,)) + encoded[1:]


def null():
    return encoder.encode(univ.Null(""))
