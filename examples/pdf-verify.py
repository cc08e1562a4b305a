#!/usr/bin/env python3
# *-* coding: utf-8 *-*
import sys

from ppksign import pdf


def main():
    trusted_cert_pems = (
        # demo ca chain
        open("ca/demo2_ca.root.crt.pem", "rb").read(),
    )
    for fname in sys.argv[1:] or (
        "pdf-signed-cms.pdf",
        "pdf-signed-cms-hsm.pdf",
    ):
        print('*' * 20, fname)
        try:
            data = open(fname, 'rb').read()
        except OSError:
            continue
        no = 0
        for (hashok, signatureok, certok) in pdf.verify(data, trusted_cert_pems):
            print('*' * 10, 'signature no:', no)
            print('signature ok?', signatureok)
            print('hash ok?', hashok)
            print('cert ok?', certok)
            no += 1


main()
