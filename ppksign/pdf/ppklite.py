# *-* coding: utf-8 *-*
"""
Adobe.PPKLite / adbe.pkcs7.detached signature placeholder.

reserve() appends an incremental update holding an empty signature
dictionary, digest() hashes everything outside the /Contents hex string
and embed() splices the DER signature into that gap. No byte moves
between reserve() and embed(), so the xref offsets written by reserve()
stay valid.
"""
import io
import re
import codecs
import hashlib
import binascii
import datetime
import logging
import collections

from pypdf.generic import (
    ArrayObject,
    ByteStringObject,
    DecodedStreamObject,
    DictionaryObject,
    IndirectObject,
    NameObject,
    NumberObject,
    create_string_object,
)

from ppksign.signer import ALGORITHMS
from ppksign.errors import (
    EncodingError,
    PDFError,
    InvalidByteRange,
    SignatureTooLarge,
)
from ppksign.pdf.document import Document

logger = logging.getLogger(__name__)

UNSIGNED = "unsigned"
RESERVED = "reserved"
SIGNED = "signed"

BYTERANGE = b"[0 0000000000 0000000000 0000000000]"

SIGNATURE = b"""\
<<
/Type /Sig
/Filter /Adobe.PPKLite
/SubFilter /adbe.pkcs7.detached
/ByteRange %(byterange)s
/Contents <%(contents)s>
%(extra)s>>"""

_BYTERANGE_ARRAY = re.compile(rb"/ByteRange\s*\[([^\]]*)\]")

Placeholder = collections.namedtuple(
    "Placeholder", "data sigid byterange gap byterange_offset size"
)


def EncodedString(s):
    """PDF text string, UTF-16BE with a byte order mark unless plain ASCII."""
    if isinstance(s, bytes):
        return create_string_object(s)
    try:
        s.encode("ascii")
    except UnicodeEncodeError:
        return create_string_object(codecs.BOM_UTF16_BE + s.encode("utf-16be"))
    return create_string_object(s)


def serialize(obj):
    fo = io.BytesIO()
    obj.write_to_stream(fo)
    return fo.getvalue()


def pdfdate(value):
    """D:YYYYMMDDHHmmSS+00'00' for a datetime; strings pass through."""
    if isinstance(value, datetime.datetime):
        if value.tzinfo is not None:
            value = value.astimezone(datetime.timezone.utc)
        return value.strftime("D:%Y%m%d%H%M%S+00'00'")
    if isinstance(value, bytes):
        return value.decode("latin-1")
    return value


def _signature(udct, aligned):
    extra = []
    entries = (
        ("/M", "signingdate"),
        ("/Name", "name"),
        ("/Location", "location"),
        ("/Reason", "reason"),
        ("/ContactInfo", "contact"),
    )
    for key, name in entries:
        value = udct.get(name)
        if value is None:
            continue
        if name == "signingdate":
            value = pdfdate(value)
        extra.append(
            serialize(NameObject(key)) + b" " + serialize(EncodedString(value)) + b"\n"
        )
    return SIGNATURE % {
        b"byterange": BYTERANGE,
        b"contents": b"0" * (2 * aligned),
        b"extra": b"".join(extra),
    }


def _field_name(doc, udct):
    base = udct.get("sigfield", "Signature1")
    names = doc.field_names()
    if base not in names:
        return base
    if not udct.get("auto_sigfield", False):
        raise PDFError("signature field %r already exists" % base)
    i = 1
    while "%s_%d" % (base, i) in names:
        i += 1
    return "%s_%d" % (base, i)


def _acroform(doc, widgetref, sigflags):
    form = DictionaryObject()
    fields = ArrayObject()
    flags = sigflags
    existing = doc.acroform()
    if existing is not None:
        for k, v in existing.items():
            form[k] = v
        if "/Fields" in existing:
            fields.extend(existing["/Fields"])
        flags |= int(existing.get("/SigFlags", 0))
    fields.append(widgetref)
    form[NameObject("/Fields")] = fields
    form[NameObject("/SigFlags")] = NumberObject(flags)
    return form


def _widget(name, flags, sigref, pageref):
    annot = DictionaryObject()
    annot.update({
        NameObject("/Type"): NameObject("/Annot"),
        NameObject("/Subtype"): NameObject("/Widget"),
        NameObject("/FT"): NameObject("/Sig"),
        NameObject("/F"): NumberObject(flags),
        # invisible signature, zero sized box
        NameObject("/Rect"): ArrayObject([NumberObject(0)] * 4),
        NameObject("/T"): EncodedString(name),
        NameObject("/V"): sigref,
        NameObject("/P"): pageref,
    })
    return annot


def _catalog(doc, formref):
    catalog = DictionaryObject()
    for k, v in doc.catalog.items():
        catalog[k] = v
    catalog[NameObject("/AcroForm")] = formref
    return catalog


def _file_id(doc):
    # ID[0] must stay unchanged, ID[1] identifies this revision
    second = hashlib.md5(doc.datau).digest()
    first = doc.file_id() or second
    return ArrayObject([ByteStringObject(first), ByteStringObject(second)])


def _subsections(positions):
    keys = sorted(positions)
    groups = []
    for key in keys:
        if groups and groups[-1][-1] == key - 1:
            groups[-1].append(key)
        else:
            groups.append([key])
    return groups


def _xref_table(positions):
    out = [b"xref\n"]
    for group in _subsections(positions):
        out.append(b"%d %d\n" % (group[0], len(group)))
        for num in group:
            if num == 0:
                out.append(b"0000000000 65535 f \n")
            else:
                offset, generation = positions[num]
                out.append(b"%010d %05d n \n" % (offset, generation))
    return b"".join(out)


def _xref_stream(positions, trailer):
    width = 4 if max(o for o, _ in positions.values() if o) < 1 << 32 else 8
    index = ArrayObject()
    rows = []
    for group in _subsections(positions):
        index.extend([NumberObject(group[0]), NumberObject(len(group))])
        for num in group:
            if num == 0:
                rows.append(b"\0" + bytes(width) + b"\xff\xff")
            else:
                offset, generation = positions[num]
                rows.append(
                    b"\1" + offset.to_bytes(width, "big") + generation.to_bytes(2, "big")
                )
    xref = DecodedStreamObject()
    xref[NameObject("/Type")] = NameObject("/XRef")
    xref.update(trailer)
    xref[NameObject("/W")] = ArrayObject(
        [NumberObject(1), NumberObject(width), NumberObject(2)]
    )
    xref[NameObject("/Index")] = index
    xref.set_data(b"".join(rows))
    return serialize(xref)


def reserve(datau, aligned=8192, udct=None):
    """
    Append a signature placeholder as an incremental update.

    :param datau: the unsigned PDF
    :param aligned: bytes reserved for the DER signature
    :param udct: signing parameters (sigflags, sigflagsft, sigfield,
        auto_sigfield, sigpage, name, contact, location, reason, signingdate)
    :return: Placeholder
    """
    udct = udct or {}
    datau = bytes(datau)
    if aligned <= 0:
        raise PDFError("reserved signature size must be positive, got %d" % aligned)
    doc = Document(datau)
    if doc.signatures():
        raise PDFError("document already carries a signature")
    n = doc.highest
    sigid, formid, widgetid = n + 1, n + 2, n + 3
    logger.debug(
        "allocating signature %d, acroform %d, widget %d", sigid, formid, widgetid
    )
    sigref = IndirectObject(sigid, 0, doc.reader)
    formref = IndirectObject(formid, 0, doc.reader)
    widgetref = IndirectObject(widgetid, 0, doc.reader)
    pageref = doc.page(udct.get("sigpage", 0))

    objects = [
        (doc.root.idnum, doc.root.generation, serialize(_catalog(doc, formref))),
        (sigid, 0, _signature(udct, aligned)),
        (formid, 0, serialize(_acroform(doc, widgetref, udct.get("sigflags", 3)))),
        (widgetid, 0, serialize(_widget(
            _field_name(doc, udct), udct.get("sigflagsft", 132), sigref, pageref
        ))),
    ]

    start = len(datau)
    out = bytearray(b"\n")
    positions = {0: (0, 65535)}
    for num, generation, body in objects:
        positions[num] = (start + len(out), generation)
        out += b"%d %d obj\n" % (num, generation)
        out += body
        out += b"\nendobj\n"

    trailer = DictionaryObject()
    trailer[NameObject("/Size")] = NumberObject(n + (5 if doc.xref == "stream" else 4))
    trailer[NameObject("/Root")] = IndirectObject(
        doc.root.idnum, doc.root.generation, doc.reader
    )
    if doc.info is not None:
        trailer[NameObject("/Info")] = doc.info
    trailer[NameObject("/ID")] = _file_id(doc)
    trailer[NameObject("/Prev")] = NumberObject(doc.startxref)

    xref_offset = start + len(out)
    if doc.xref == "stream":
        xrefid = n + 4
        positions[xrefid] = (xref_offset, 0)
        out += b"%d 0 obj\n" % xrefid
        out += _xref_stream(positions, trailer)
        out += b"\nendobj\n"
    else:
        out += _xref_table(positions)
        out += b"trailer\n" + serialize(trailer) + b"\n"
    out += b"startxref\n%d\n%%%%EOF\n" % xref_offset

    data = datau + bytes(out)
    sig_offset = positions[sigid][0]
    byterange_offset = data.index(BYTERANGE, sig_offset)
    gap_start = data.index(b"/Contents <", sig_offset) + len(b"/Contents ")
    gap_end = gap_start + 2 * aligned + 2
    byterange = [0, gap_start, gap_end, len(data) - gap_end]

    # written now, so the digest covers the final bytes
    filled = b"[%d %d %d %d]" % tuple(byterange)
    if len(filled) > len(BYTERANGE):
        raise PDFError("document too large for the /ByteRange slot")
    filled = filled.ljust(len(BYTERANGE), b" ")
    data = data[:byterange_offset] + filled + data[byterange_offset + len(BYTERANGE):]
    logger.debug("placeholder ByteRange %s", byterange)

    return Placeholder(
        data=data,
        sigid=sigid,
        byterange=byterange,
        gap=(gap_start, gap_end),
        byterange_offset=byterange_offset,
        size=aligned,
    )


def _check_byterange(data, byterange):
    try:
        br = [int(i) for i in byterange]
    except (TypeError, ValueError):
        raise InvalidByteRange("ByteRange must hold four integers: %r" % (byterange,))
    if len(br) != 4:
        raise InvalidByteRange("ByteRange must hold four integers: %r" % (br,))
    if br[0] != 0 or not 0 < br[1] < br[2] <= len(data) or br[2] + br[3] != len(data):
        raise InvalidByteRange("ByteRange %r does not cover a %d byte file" % (br, len(data)))
    if data[br[1]] != ord("<") or data[br[2] - 1] != ord(">"):
        raise InvalidByteRange("ByteRange %r does not delimit a hex string" % (br,))
    return br


def digest(data, byterange, hashalgo="sha256"):
    """Digest of the document outside the /Contents gap."""
    if hashalgo not in ALGORITHMS:
        raise EncodingError("unsupported digest algorithm %r" % hashalgo)
    br = _check_byterange(data, byterange)
    md = hashlib.new(hashalgo)
    md.update(data[br[0]:br[0] + br[1]])
    md.update(data[br[2]:br[2] + br[3]])
    md = md.digest()
    logger.debug("%s document digest %s", hashalgo, md.hex())
    return md


def _slot(data, gap_start):
    i = data.rfind(b"/ByteRange", 0, gap_start)
    m = _BYTERANGE_ARRAY.match(data, i) if i != -1 else None
    if m is None:
        raise InvalidByteRange("no /ByteRange before offset %d" % gap_start)
    try:
        return [int(v) for v in m.group(1).split()]
    except ValueError:
        raise InvalidByteRange("unreadable /ByteRange %r" % m.group(0))


def embed(data, gap_start, gap_end, cms_der):
    """
    Write the signature into the reserved /Contents gap.

    :param data: placeholder PDF as returned by reserve()
    :param gap_start: offset of '<'
    :param gap_end: offset after '>'
    :param cms_der: DER ContentInfo
    :return: signed PDF, same length as data
    """
    data = bytes(data)
    if not 0 < gap_start < gap_end <= len(data) or gap_end - gap_start < 4:
        raise InvalidByteRange("gap %d..%d is outside the document" % (gap_start, gap_end))
    if data[gap_start] != ord("<") or data[gap_end - 1] != ord(">"):
        raise InvalidByteRange("gap %d..%d is not a hex string" % (gap_start, gap_end))
    if data[gap_start + 1:gap_end - 1].strip(b"0"):
        raise InvalidByteRange("gap %d..%d is already filled" % (gap_start, gap_end))
    expected = [0, gap_start, gap_end, len(data) - gap_end]
    found = _slot(data, gap_start)
    if found != expected:
        raise InvalidByteRange("/ByteRange %r, expected %r" % (found, expected))

    contents = binascii.hexlify(bytes(cms_der)).upper()
    capacity = gap_end - gap_start - 2
    if len(contents) > capacity:
        raise SignatureTooLarge(
            "signature needs %d hex digits, %d reserved" % (len(contents), capacity)
        )
    logger.debug("embedding %d byte signature into %d byte gap", len(cms_der), capacity // 2)
    return data[:gap_start + 1] + contents.ljust(capacity, b"0") + data[gap_end - 1:]


def state(data):
    """UNSIGNED, RESERVED or SIGNED, judged by the last signature field."""
    signatures = Document(data).signatures()
    if not signatures:
        return UNSIGNED
    contents = signatures[-1].get_object().get("/Contents")
    if contents is not None and contents.get_object().original_bytes.strip(b"\0"):
        return SIGNED
    return RESERVED
