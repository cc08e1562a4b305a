#!/usr/bin/env python3
# *-* coding: utf-8 *-*
import sys
import datetime

from ppksign import hsm
from ppksign.pdf import cms


def main():
    date = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(hours=12)
    dct = {
        'sigflags': 3,
        'sigfield': 'Signature1',
        'auto_sigfield': True,
        'contact': 'mak@trisoft.com.pl',
        'location': 'Szczecin',
        'signingdate': date,
        'reason': 'Dokument podpisany cyfrowo',
    }
    with open('demo2_user1.p12', 'rb') as fp:
        token = hsm.KeyHSM.from_pkcs12(fp.read(), '1234')
    fname = 'pdf.pdf'
    if len(sys.argv) > 1:
        fname = sys.argv[1]
    with open(fname, 'rb') as fp:
        datau = fp.read()
    datas = cms.sign(datau, dct, token, hashalgo='sha256')
    fname = fname.replace('.pdf', '-signed-cms.pdf')
    with open(fname, 'wb') as fp:
        fp.write(datas)


main()
