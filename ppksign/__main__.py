# *-* coding: utf-8 *-*
"""
Command line front end.

    python -m ppksign sign --lib /usr/lib/libeToken.so --label TOKEN --pin 1234 in.pdf out.pdf
    python -m ppksign sign --p12 user.p12 --password secret in.pdf out.pdf
    python -m ppksign verify out.pdf --ca root.pem
    python -m ppksign tokens --lib /usr/lib/libeToken.so
    python -m ppksign export-cert --lib /usr/lib/libeToken.so --label TOKEN --pin 1234 user
"""
import os
import sys
import argparse
import logging

from ppksign import __version__
from ppksign.errors import PPKSignError
from ppksign.hsm import BaseHSM, KeyHSM
from ppksign.pdf import cms, verify

logger = logging.getLogger("ppksign")


def create_args(argv=None):
    parser = argparse.ArgumentParser(
        prog="ppksign",
        description="Sign PDF documents with a PKCS#11 token (Adobe.PPKLite, adbe.pkcs7.detached)",
    )
    parser.add_argument("--version", action="version", version=__version__)
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    commands = parser.add_subparsers(dest="command", required=True)

    def token_args(p, login=True):
        p.add_argument(
            "--lib", default=os.environ.get("PPKSIGN_PKCS11_LIB"),
            help="PKCS#11 module path (PPKSIGN_PKCS11_LIB)",
        )
        if login:
            p.add_argument(
                "--label", default=os.environ.get("PPKSIGN_TOKEN_LABEL"),
                help="token label (PPKSIGN_TOKEN_LABEL)",
            )
            p.add_argument(
                "--pin", default=os.environ.get("PPKSIGN_PIN"),
                help="user PIN (PPKSIGN_PIN)",
            )
            p.add_argument(
                "--keyid", type=bytes.fromhex,
                help="key id in hex, default the first usable key",
            )

    p = commands.add_parser("sign", help="sign a PDF")
    token_args(p)
    p.add_argument("--p12", help="sign with a PKCS#12 file instead of a token")
    p.add_argument("--password", help="PKCS#12 password")
    p.add_argument("--reason")
    p.add_argument("--location")
    p.add_argument("--contact")
    p.add_argument("--field", default="Signature1", help="signature field name")
    p.add_argument("--size", type=int, default=8192, help="bytes reserved for the signature")
    p.add_argument("--hash", default="sha256", choices=("sha256", "sha384", "sha512"))
    p.add_argument("input")
    p.add_argument("output")

    p = commands.add_parser("verify", help="verify the signatures of a PDF")
    p.add_argument("--ca", action="append", default=[], help="trusted PEM certificate")
    p.add_argument("input")

    p = commands.add_parser("tokens", help="list tokens")
    token_args(p, login=False)

    p = commands.add_parser("export-cert", help="write the token certificate as DER and PEM")
    token_args(p)
    p.add_argument("output", help="file name without extension")

    args = parser.parse_args(argv)
    if args.command in ("sign", "tokens", "export-cert") and not getattr(args, "p12", None):
        if not args.lib:
            parser.error("--lib or PPKSIGN_PKCS11_LIB is required")
        if args.command != "tokens" and (args.label is None or args.pin is None):
            parser.error("--label and --pin are required")
    return args


def open_token(args):
    from ppksign import pkcs11

    token = pkcs11.HSM(args.lib)
    if getattr(args, "label", None) is not None:
        token.login(args.label, args.pin)
    return token


class TokenSigner(BaseHSM):
    """Binds a logged in token to the key chosen on the command line."""

    def __init__(self, token, keyid):
        self.token = token
        self.keyid = keyid

    def certificate(self):
        return self.token.certificate(self.keyid)

    def sign(self, keyid, digest, hashalgo):
        return self.token.sign(keyid, digest, hashalgo)


def do_sign(args):
    with open(args.input, "rb") as fp:
        datau = fp.read()
    udct = {
        "sigfield": args.field,
        "auto_sigfield": True,
        "aligned": args.size,
    }
    for key in ("reason", "location", "contact"):
        if getattr(args, key):
            udct[key] = getattr(args, key)

    if args.p12:
        with open(args.p12, "rb") as fp:
            hsm = KeyHSM.from_pkcs12(fp.read(), args.password)
        datas = cms.sign(datau, udct, hsm, hashalgo=args.hash)
    else:
        with open_token(args) as token:
            datas = cms.sign(datau, udct, TokenSigner(token, args.keyid), hashalgo=args.hash)

    with open(args.output, "wb") as fp:
        fp.write(datas)
    logger.info("signed %s -> %s", args.input, args.output)
    return 0


def do_verify(args):
    with open(args.input, "rb") as fp:
        data = fp.read()
    trusted = []
    for fname in args.ca:
        with open(fname, "rb") as fp:
            trusted.append(fp.read())
    results = verify(data, trusted)
    if not results:
        print("no signatures")
        return 1
    rc = 0
    for no, (hashok, signatureok, certok) in enumerate(results):
        print("signature no:", no)
        print("hash ok?", hashok)
        print("signature ok?", signatureok)
        print("cert ok?", certok)
        if not (hashok and signatureok):
            rc = 1
    return rc


def do_tokens(args):
    token = open_token(args)
    slots = token.slots()
    if not slots:
        print("no tokens present")
    for info in slots:
        print("%(slot)s: %(label)s (%(manufacturer)s %(model)s, serial %(serial)s)" % info)
    return 0


def do_export_cert(args):
    with open_token(args) as token:
        token.cert_export(args.output, args.keyid)
    print("written %s.der and %s.pem" % (args.output, args.output))
    return 0


COMMANDS = {
    "sign": do_sign,
    "verify": do_verify,
    "tokens": do_tokens,
    "export-cert": do_export_cert,
}


def main(argv=None):
    args = create_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        return COMMANDS[args.command](args)
    except PPKSignError as ex:
        logger.error("%s: %s", type(ex).__name__, ex)
        return 1
    except OSError as ex:
        logger.error("%s", ex)
        return 1


if __name__ == "__main__":
    sys.exit(main())
