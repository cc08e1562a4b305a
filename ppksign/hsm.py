# *-* coding: utf-8 *-*
import logging

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa, utils
from cryptography.hazmat.primitives.serialization import pkcs12

from ppksign.errors import AuthenticationFailed, NoSuchKey

logger = logging.getLogger(__name__)

HASHES = {
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}


class BaseHSM(object):
    def certificate(self):
        """
        locate the signing certificate

        :return: keyid, certificate-in-der
        """
        raise NotImplementedError()

    def sign(self, keyid, digest, hashalgo):
        """
        sign an already computed digest

        :param keyid: the keyid as returned by certificate()
        :param digest: hash of the data to sign
        :param hashalgo: name of the algorithm that produced digest
        :return: raw RSA PKCS#1 v1.5 signature, modulus sized
        """
        raise NotImplementedError()

    def chain(self):
        """additional DER certificates to embed next to the signer"""
        return ()


class KeyHSM(BaseHSM):
    """Software stand-in for a token, backed by a private key in memory."""

    keyid = b"\x01"

    def __init__(self, key, cert, othercerts=()):
        if not isinstance(key, rsa.RSAPrivateKey):
            raise NoSuchKey("only RSA private keys can sign")
        self.key = key
        self.cert = cert
        self.othercerts = list(othercerts)

    @classmethod
    def from_pkcs12(cls, data, password):
        if isinstance(password, str):
            password = password.encode("utf-8")
        try:
            key, cert, othercerts = pkcs12.load_key_and_certificates(data, password)
        except ValueError as ex:
            raise AuthenticationFailed("cannot open PKCS#12 file: %s" % ex)
        if key is None or cert is None:
            raise NoSuchKey("PKCS#12 file holds no key and certificate pair")
        return cls(key, cert, othercerts or ())

    def certificate(self):
        return self.keyid, self.cert.public_bytes(serialization.Encoding.DER)

    def chain(self):
        return tuple(
            c.public_bytes(serialization.Encoding.DER) for c in self.othercerts
        )

    def sign(self, keyid, digest, hashalgo):
        if keyid != self.keyid:
            raise NoSuchKey("unknown key id %r" % (keyid,))
        algo = HASHES[hashalgo]()
        logger.debug("software signing %d byte %s digest", len(digest), hashalgo)
        return self.key.sign(digest, padding.PKCS1v15(), utils.Prehashed(algo))
