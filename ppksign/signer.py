# *-* coding: utf-8 *-*
import hashlib
import logging
import datetime

from pyasn1 import error as asn1error
from pyasn1.type import univ, useful
from pyasn1.codec.der import encoder, decoder
from pyasn1_modules import rfc4055, rfc5280, rfc5652

from cryptography import x509
from cryptography.hazmat.primitives.asymmetric import rsa

from ppksign import der
from ppksign.errors import EncodingError, SignatureSizeMismatch

logger = logging.getLogger(__name__)

# hashalgo: (digest algorithm, signature algorithm)
ALGORITHMS = {
    "sha256": (rfc4055.id_sha256, rfc4055.sha256WithRSAEncryption),
    "sha384": (rfc4055.id_sha384, rfc4055.sha384WithRSAEncryption),
    "sha512": (rfc4055.id_sha512, rfc4055.sha512WithRSAEncryption),
}


class Certificate(object):
    """Parsed signer certificate; the DER bytes are kept verbatim."""

    def __init__(self, data):
        data = bytes(data)
        try:
            asn1, rest = decoder.decode(data, asn1Spec=rfc5280.Certificate())
        except asn1error.PyAsn1Error as ex:
            raise EncodingError("certificate is not valid DER X.509: %s" % ex)
        if rest:
            raise EncodingError("%d trailing bytes after certificate" % len(rest))
        if encoder.encode(asn1) != data:
            raise EncodingError("certificate is not DER encoded")
        try:
            crypto = x509.load_der_x509_certificate(data)
            public_key = crypto.public_key()
        except ValueError as ex:
            raise EncodingError("certificate cannot be loaded: %s" % ex)
        self.der = data
        self.asn1 = asn1
        self.crypto = crypto
        self.public_key = public_key

    @property
    def issuer(self):
        return self.asn1["tbsCertificate"]["issuer"]

    @property
    def serial_number(self):
        return self.asn1["tbsCertificate"]["serialNumber"]

    @property
    def byte_size(self):
        if not isinstance(self.public_key, rsa.RSAPublicKey):
            raise EncodingError("only RSA certificates are supported")
        return (self.public_key.key_size + 7) // 8

    def info(self):
        validity = self.asn1["tbsCertificate"]["validity"]
        return {
            "subject": self.crypto.subject.rfc4514_string(),
            "issuer": self.crypto.issuer.rfc4514_string(),
            "serial_number": int(self.serial_number),
            "not_before": validity["notBefore"].getComponent().asDateTime,
            "not_after": validity["notAfter"].getComponent().asDateTime,
        }


def certificate_info(certificate_der):
    """
    Informational view of a certificate.

    :param certificate_der: X.509 certificate, DER bytes
    :return: dict with subject, issuer, serial_number, not_before, not_after
    """
    return Certificate(certificate_der).info()


def _algorithm(oid):
    algo = rfc5280.AlgorithmIdentifier()
    algo["algorithm"] = oid
    algo["parameters"] = der.null()
    return algo


def _time(signed_time):
    if signed_time.tzinfo is None:
        signed_time = signed_time.replace(tzinfo=datetime.timezone.utc)
    signed_time = signed_time.astimezone(datetime.timezone.utc)
    value = rfc5652.Time()
    # RFC 5652 11.3: UTCTime for 1950..2049, GeneralizedTime otherwise
    if 1950 <= signed_time.year < 2050:
        value["utcTime"] = useful.UTCTime(signed_time.strftime("%y%m%d%H%M%SZ"))
    else:
        value["generalTime"] = useful.GeneralizedTime(
            signed_time.strftime("%Y%m%d%H%M%SZ")
        )
    return value


def _attribute(oid, value):
    attr = rfc5652.Attribute()
    attr["attrType"] = oid
    attr["attrValues"].append(encoder.encode(value))
    return attr


def _attributes(signed_md, signed_time):
    attrs = [
        _attribute(rfc5652.id_contentType, univ.ObjectIdentifier(rfc5652.id_data)),
        _attribute(rfc5652.id_messageDigest, univ.OctetString(signed_md)),
        _attribute(rfc5652.id_signingTime, _time(signed_time)),
    ]
    # the DER encoder sorts SET OF members
    return attrs


def signed_attributes(signed_md, signed_time):
    """DER SET OF Attribute exactly as it is digested and signed."""
    result = rfc5652.SignedAttributes()
    for attr in _attributes(signed_md, signed_time):
        result.append(attr)
    return encoder.encode(result)


def attributes_digest(signed_md, signed_time, hashalgo="sha256"):
    return hashlib.new(hashalgo, signed_attributes(signed_md, signed_time)).digest()


def _check_digest(document_digest, hashalgo):
    if hashalgo not in ALGORITHMS:
        raise EncodingError("unsupported digest algorithm %r" % hashalgo)
    size = hashlib.new(hashalgo).digest_size
    if len(document_digest) != size:
        raise EncodingError(
            "%s document digest must be %d bytes, got %d"
            % (hashalgo, size, len(document_digest))
        )


def build(
    document_digest,
    certificate_der,
    sign_fn,
    othercerts=(),
    hashalgo="sha256",
    clock=None,
):
    """
    Build a detached CMS SignedData for a PDF /Contents entry.

    :param document_digest: digest of the PDF byte ranges
    :param certificate_der: signer certificate, DER bytes
    :param sign_fn: callable(attrs_digest) -> raw RSA PKCS#1 v1.5 signature
    :param othercerts: additional DER certificates (chain) to embed
    :param hashalgo: sha256, sha384 or sha512
    :param clock: callable returning the signing time, defaults to utc now
    :return: DER encoded ContentInfo
    """
    document_digest = bytes(document_digest)
    _check_digest(document_digest, hashalgo)
    digest_oid, signature_oid = ALGORITHMS[hashalgo]

    cert = Certificate(certificate_der)
    certificates = [cert] + [Certificate(c) for c in othercerts]
    signed_time = clock() if clock is not None else datetime.datetime.now(
        tz=datetime.timezone.utc
    )

    signer = rfc5652.SignerInfo()
    signer["version"] = 1
    sid = rfc5652.IssuerAndSerialNumber()
    sid["issuer"] = cert.issuer
    sid["serialNumber"] = cert.serial_number
    signer["sid"]["issuerAndSerialNumber"] = sid
    signer["digestAlgorithm"] = _algorithm(digest_oid)
    for attr in _attributes(document_digest, signed_time):
        signer["signedAttrs"].append(attr)
    signer["signatureAlgorithm"] = _algorithm(signature_oid)

    try:
        tosign = der.as_set(encoder.encode(signer["signedAttrs"]))
    except asn1error.PyAsn1Error as ex:
        raise EncodingError("cannot encode signed attributes: %s" % ex)
    attrs_digest = hashlib.new(hashalgo, tosign).digest()
    logger.debug("signed attributes digest %s", attrs_digest.hex())

    signature = bytes(sign_fn(attrs_digest))
    if len(signature) != cert.byte_size:
        raise SignatureSizeMismatch(
            "signature is %d bytes, the %d bit key needs %d"
            % (len(signature), cert.public_key.key_size, cert.byte_size)
        )
    signer["signature"] = signature

    sdata = rfc5652.SignedData()
    sdata["version"] = 1
    sdata["digestAlgorithms"].append(_algorithm(digest_oid))
    sdata["encapContentInfo"]["eContentType"] = rfc5652.id_data
    for c in certificates:
        choice = rfc5652.CertificateChoices()
        choice["certificate"] = c.asn1
        sdata["certificates"].append(choice)
    sdata["signerInfos"].append(signer)

    datas = rfc5652.ContentInfo()
    datas["contentType"] = rfc5652.id_signedData
    try:
        datas["content"] = encoder.encode(sdata)
        datas = encoder.encode(datas)
    except asn1error.PyAsn1Error as ex:
        raise EncodingError("cannot encode SignedData: %s" % ex)
    der.check_der(datas)
    logger.debug("CMS SignedData is %d bytes", len(datas))
    return datas
