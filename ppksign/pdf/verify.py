# *-* coding: utf-8 *-*
import logging

from ppksign import der, verifier
from ppksign.errors import InvalidByteRange, PDFError
from ppksign.pdf.document import Document

logger = logging.getLogger(__name__)


def byteranges(pdfdata):
    """/ByteRange arrays of the signature fields, in field order."""
    result = []
    for sig in Document(pdfdata).signatures():
        try:
            br = [int(i) for i in sig["/ByteRange"]]
        except (TypeError, ValueError):
            raise InvalidByteRange("unreadable /ByteRange %r" % (sig["/ByteRange"],))
        if len(br) != 4 or not 0 <= br[0] < br[0] + br[1] < br[2] <= len(pdfdata):
            raise InvalidByteRange("ByteRange %r does not fit the document" % (br,))
        if pdfdata[br[0] + br[1]] != ord("<") or pdfdata[br[2] - 1] != ord(">"):
            raise InvalidByteRange("ByteRange %r does not delimit a hex string" % (br,))
        result.append(br)
    return result


def signature(pdfdata, br):
    """The DER signature stored between the two byte ranges, padding removed."""
    gap_start = br[0] + br[1]
    contents = pdfdata[gap_start + 1:br[2] - 1]
    try:
        bcontents = bytes.fromhex(contents.decode("ascii"))
    except ValueError:
        raise InvalidByteRange("/Contents at %d is not a hex string" % gap_start)
    if not bcontents.strip(b"\0"):
        raise PDFError("signature at %d was reserved but never filled" % gap_start)
    _, _, _, end = der.read_tlv(bcontents)
    return bcontents[:end]


def verify(pdfdata, certs=None):
    """
    Verify PDF signatures.

    :param pdfdata: PDF document as bytes.
    :param certs: additional trusted PEM certificates.
    :return: one (hashok, signatureok, certok) tuple per signature.
    """
    results = []
    for br in byteranges(pdfdata):
        if br[0] != 0 or br[2] + br[3] != len(pdfdata):
            logger.info("signature %r does not cover the whole file", br)
        data1 = pdfdata[br[0]:br[0] + br[1]]
        data2 = pdfdata[br[2]:br[2] + br[3]]
        result = verifier.verify(signature(pdfdata, br), data1 + data2, certs)
        logger.debug("ByteRange %r: hash %s, signature %s, certificate %s", br, *result)
        results.append(result)
    return results
