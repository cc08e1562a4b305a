# *-* coding: utf-8 *-*
import io
import re
import logging

from pypdf import PdfReader
from pypdf.errors import PyPdfError
from pypdf.generic import DictionaryObject, IndirectObject

from ppksign.errors import MalformedPDF

logger = logging.getLogger(__name__)

_OBJ = re.compile(rb"(\d+)\s+(\d+)\s+obj\b")
_STARTXREF = re.compile(rb"startxref\s+(\d+)")
_ENCRYPT = re.compile(rb"/Encrypt\s*(\d+\s+\d+\s+R|<<)")
_WHITESPACE = b" \t\r\n\f\0"


def find_startxref(datau):
    """Offset recorded by the last startxref keyword."""
    i = datau.rfind(b"startxref")
    if i == -1:
        raise MalformedPDF("startxref not found")
    m = _STARTXREF.match(datau, i)
    if m is None:
        raise MalformedPDF("startxref without an offset")
    offset = int(m.group(1))
    if offset >= len(datau):
        raise MalformedPDF("startxref %d points past the end of file" % offset)
    return offset


def xref_kind(datau, offset):
    """'table' for a classic xref section, 'stream' for a cross reference stream."""
    i = offset
    while i < len(datau) and datau[i] in _WHITESPACE:
        i += 1
    if datau.startswith(b"xref", i):
        return "table"
    if _OBJ.match(datau, i):
        return "stream"
    raise MalformedPDF("no cross reference section at offset %d" % offset)


def highest_object(datau, size):
    numbers = [int(m.group(1)) for m in _OBJ.finditer(datau)]
    return max(numbers + [size - 1])


class Document(object):
    """
    Read only view of the parts of a PDF an incremental signature touches.
    """

    def __init__(self, datau):
        self.datau = bytes(datau)
        self.startxref = find_startxref(self.datau)
        self.xref = xref_kind(self.datau, self.startxref)
        # pypdf sets up decryption while opening, check the last trailer first
        if _ENCRYPT.search(self.datau, self.startxref):
            raise MalformedPDF("encrypted documents are not supported")
        try:
            self.reader = PdfReader(io.BytesIO(self.datau))
            encrypted = self.reader.is_encrypted
        except (PyPdfError, NotImplementedError, ValueError, KeyError,
                IndexError, TypeError) as ex:
            raise MalformedPDF("cannot parse PDF: %s" % ex)
        if encrypted:
            raise MalformedPDF("encrypted documents are not supported")

        trailer = self.reader.trailer
        root = trailer.raw_get("/Root") if "/Root" in trailer else None
        if not isinstance(root, IndirectObject):
            raise MalformedPDF("trailer has no indirect /Root")
        try:
            self.catalog = root.get_object()
            self.size = int(trailer["/Size"])
        except (PyPdfError, ValueError, KeyError, TypeError) as ex:
            raise MalformedPDF("unreadable trailer: %s" % ex)
        if not isinstance(self.catalog, DictionaryObject):
            raise MalformedPDF("/Root is not a dictionary")
        self.root = root
        self.info = trailer.raw_get("/Info") if "/Info" in trailer else None
        self.id = trailer.get("/ID")
        self.highest = highest_object(self.datau, self.size)
        logger.debug(
            "startxref %d (%s), /Size %d, highest object %d, root %d %d R",
            self.startxref, self.xref, self.size, self.highest,
            root.idnum, root.generation,
        )

    def page(self, number=0):
        """Indirect reference of the page the signature widget points at."""
        try:
            pages = self.reader.pages
            count = len(pages)
        except (PyPdfError, ValueError, KeyError, TypeError) as ex:
            raise MalformedPDF("cannot read page tree: %s" % ex)
        if not -count <= number < count:
            raise MalformedPDF("page %d requested, document has %d" % (number, count))
        try:
            ref = pages[number].indirect_reference
        except (PyPdfError, ValueError, KeyError, TypeError) as ex:
            raise MalformedPDF("cannot read page tree: %s" % ex)
        if ref is None:
            raise MalformedPDF("page %d is not an indirect object" % number)
        return ref

    def acroform(self):
        """The existing /AcroForm dictionary, or None."""
        if "/AcroForm" not in self.catalog:
            return None
        form = self.catalog["/AcroForm"]
        if not isinstance(form, DictionaryObject):
            raise MalformedPDF("/AcroForm is not a dictionary")
        return form

    def field_names(self):
        form = self.acroform()
        if form is None or "/Fields" not in form:
            return []
        names = []
        for field in form["/Fields"]:
            field = field.get_object()
            if isinstance(field, DictionaryObject) and "/T" in field:
                names.append(str(field["/T"]))
        return names

    def signatures(self):
        """
        Signature dictionaries of the form: the /V of every /FT /Sig field
        (kids included, /FT inherited) that carries a /ByteRange.
        """
        form = self.acroform()
        if form is None or "/Fields" not in form:
            return []
        result = []
        seen = set()

        def walk(fields, inherited):
            for ref in fields:
                if isinstance(ref, IndirectObject):
                    if (ref.idnum, ref.generation) in seen:
                        continue
                    seen.add((ref.idnum, ref.generation))
                field = ref.get_object()
                if not isinstance(field, DictionaryObject):
                    continue
                kind = field["/FT"] if "/FT" in field else inherited
                if kind == "/Sig" and "/V" in field:
                    value = field["/V"]
                    if isinstance(value, DictionaryObject) and "/ByteRange" in value:
                        result.append(value)
                if "/Kids" in field:
                    walk(field["/Kids"], kind)

        try:
            walk(form["/Fields"], None)
        except (PyPdfError, ValueError, KeyError, TypeError) as ex:
            raise MalformedPDF("cannot read form fields: %s" % ex)
        return result

    def file_id(self):
        """First element of the trailer /ID as bytes, or None."""
        if not self.id:
            return None
        first = self.id.get_object()[0].get_object()
        return first.original_bytes
