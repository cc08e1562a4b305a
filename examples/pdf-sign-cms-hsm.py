#!/usr/bin/env python3
# *-* coding: utf-8 *-*
import os
import sys
import logging

#
#!/bin/bash
#SOFTHSM2_CONF=softhsm2.conf
#softhsm2-util --label "ppksign" --slot 1 --init-token --pin secret1 --so-pin secret2
#softhsm2-util --show-slots
#
from ppksign import pkcs11
from ppksign.pdf import cms

if sys.platform == 'win32':
    dllpath = r'W:\binw\SoftHSM2\lib\softhsm2-x64.dll'
else:
    dllpath = os.environ.get('PPKSIGN_PKCS11_LIB', '/usr/lib/softhsm/libsofthsm2.so')


def main():
    logging.basicConfig(level=logging.DEBUG)
    dct = {
        'sigflags': 3,
        'contact': 'mak@trisoft.com.pl',
        'location': 'Szczecin',
        'reason': 'Dokument podpisany cyfrowo',
    }
    fname = 'pdf.pdf'
    if len(sys.argv) > 1:
        fname = sys.argv[1]
    with open(fname, 'rb') as fp:
        datau = fp.read()
    with pkcs11.HSM(dllpath) as clshsm:
        clshsm.login('ppksign', 'secret1')
        datas = cms.sign(datau, dct, clshsm, hashalgo='sha256')
    fname = fname.replace('.pdf', '-signed-cms-hsm.pdf')
    with open(fname, 'wb') as fp:
        fp.write(datas)


main()
