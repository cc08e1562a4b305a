# *-* coding: utf-8 *-*
import hashlib
import logging
import datetime

import certifi

from pyasn1 import error as asn1error
from pyasn1.type import univ
from pyasn1.codec.der import encoder, decoder
from pyasn1_modules import rfc5652

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric import padding, ec, rsa
from cryptography.x509.verification import PolicyBuilder, Store

from ppksign import der
from ppksign.hsm import HASHES
from ppksign.signer import ALGORITHMS
from ppksign.errors import EncodingError

logger = logging.getLogger(__name__)

_DIGESTS = dict((digest_oid, name) for name, (digest_oid, _) in ALGORITHMS.items())


def _raw_signed_attrs(datas):
    """
    The signed attributes exactly as they sit in the encoding, retagged
    as SET. Re-encoding the decoded value could reorder a SET OF that
    some other signer emitted out of DER order.
    """
    _, _, cstart, cend = der.read_tlv(datas)
    members = list(der.children(datas, cstart, cend))
    if len(members) != 2:
        raise EncodingError("ContentInfo must hold contentType and content")
    explicit = members[1]
    _, _, cstart, cend = der.read_tlv(explicit)
    signed_data = list(der.children(explicit, cstart, cend))[0]
    _, _, cstart, cend = der.read_tlv(signed_data)
    signer_infos = list(der.children(signed_data, cstart, cend))[-1]
    _, _, cstart, cend = der.read_tlv(signer_infos)
    signer_info = list(der.children(signer_infos, cstart, cend))[0]
    _, _, cstart, cend = der.read_tlv(signer_info)
    for member in der.children(signer_info, cstart, cend):
        if member[0] == der.CONTEXT_0:
            return der.as_set(member)
    return None


def _load(datas):
    try:
        content_info, rest = decoder.decode(datas, asn1Spec=rfc5652.ContentInfo())
        if rest:
            raise EncodingError("%d trailing bytes after ContentInfo" % len(rest))
        if content_info["contentType"] != rfc5652.id_signedData:
            raise EncodingError("not a SignedData: %s" % content_info["contentType"])
        signed_data, _ = decoder.decode(
            content_info["content"], asn1Spec=rfc5652.SignedData()
        )
    except asn1error.PyAsn1Error as ex:
        raise EncodingError("cannot decode CMS: %s" % ex)
    return signed_data


def _message_digest(signer):
    for attr in signer["signedAttrs"]:
        if attr["attrType"] == rfc5652.id_messageDigest:
            value, _ = decoder.decode(attr["attrValues"][0], asn1Spec=univ.OctetString())
            return bytes(value)
    return None


def _certificates(signed_data, signer):
    sid = signer["sid"]["issuerAndSerialNumber"]
    cert = None
    othercerts = []
    for choice in signed_data["certificates"]:
        if choice.getName() != "certificate":
            continue
        asn1 = choice["certificate"]
        loaded = x509.load_der_x509_certificate(encoder.encode(asn1))
        tbs = asn1["tbsCertificate"]
        if cert is None and tbs["serialNumber"] == sid["serialNumber"] and \
                encoder.encode(tbs["issuer"]) == encoder.encode(sid["issuer"]):
            cert = loaded
        else:
            othercerts.append(loaded)
    if cert is None:
        raise EncodingError("signer certificate is not embedded")
    return cert, othercerts


class VerifyData(object):
    def __init__(self, trustedCerts=None):
        with open(certifi.where(), "rb") as pems:
            certs = x509.load_pem_x509_certificates(pems.read())
        if trustedCerts is not None:
            for cert_bytes in trustedCerts:
                certs.append(x509.load_pem_x509_certificate(cert_bytes))
        now = datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)
        self.verifier = PolicyBuilder(
            ).store(Store(certs)
            ).time(now
            ).max_chain_depth(4
            ).build_client_verifier()

    def verify(self, datas, datau):
        datas = bytes(datas)
        signed_data = _load(datas)
        signer = signed_data["signerInfos"][0]

        algo = _DIGESTS.get(signed_data["digestAlgorithms"][0]["algorithm"])
        if algo is None:
            raise EncodingError(
                "unsupported digest algorithm %s"
                % signed_data["digestAlgorithms"][0]["algorithm"]
            )
        mdData = hashlib.new(algo, datau).digest()

        signedData = _raw_signed_attrs(datas)
        if signedData is not None:
            if not der.is_canonical_set(signedData):
                logger.warning("signed attributes are not in DER order")
            mdSigned = _message_digest(signer)
        else:
            mdSigned = mdData
            signedData = bytes(datau)
        hashok = mdData == mdSigned
        logger.debug("content digest %s, signed digest %s", mdData.hex(),
                     mdSigned.hex() if mdSigned is not None else None)

        cert, othercerts = _certificates(signed_data, signer)
        public_key = cert.public_key()
        signature = bytes(signer["signature"])
        try:
            if isinstance(public_key, ec.EllipticCurvePublicKey):
                public_key.verify(signature, signedData, ec.ECDSA(HASHES[algo]()))
            elif isinstance(public_key, rsa.RSAPublicKey):
                public_key.verify(
                    signature, signedData, padding.PKCS1v15(), HASHES[algo]()
                )
            else:
                raise EncodingError("unsupported public key type")
            signatureok = True
        except InvalidSignature:
            signatureok = False

        try:
            self.verifier.verify(cert, othercerts)
            certok = True
        except Exception as ex:
            logger.warning(
                "failed certificate verification: %s (subject %s, issuer %s)",
                ex, cert.subject.rfc4514_string(), cert.issuer.rfc4514_string(),
            )
            certok = False
        return (hashok, signatureok, certok)


def verify(datas, datau, certs=None):
    """
    Verify a detached CMS signature.

    :param datas: DER ContentInfo(SignedData)
    :param datau: the signed content
    :param certs: additional trusted PEM certificates
    :return:
        hashok, signatureok, certok

        hashok : bool
            True if the messageDigest attribute matches the content.
        signatureok : bool
            True if the signature over the signed attributes is valid.
        certok : bool
            True if the signer certificate chains to a trusted root.
    """
    cls = VerifyData(certs)
    return cls.verify(datas, datau)
