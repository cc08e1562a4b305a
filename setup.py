#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import re
from setuptools import setup, find_packages
from codecs import open
from os import path

here = path.abspath(path.dirname(__file__))

# Get the long description from the README file
with open(path.join(here, 'README.rst'), encoding='utf-8') as f:
    long_description = f.read()

with open(path.join(here, 'ppksign', '__init__.py'), encoding='utf-8') as f:
    version = re.search(r"__version__ = '([^']+)'", f.read()).group(1)

setup(
    name='ppksign',
    version=version,
    description='Adobe Reader compatible PDF signatures (adbe.pkcs7.detached) with PKCS#11 tokens.',
    long_description=long_description,
    long_description_content_type='text/x-rst',
    license='MIT',
    classifiers=[
        'Development Status :: 4 - Beta',
        'Operating System :: OS Independent',
        'Intended Audience :: Developers',
        'License :: OSI Approved :: MIT License',
        'Programming Language :: Python :: 3',
        'Topic :: Software Development :: Libraries :: Python Modules',
        'Topic :: Security :: Cryptography',
        'Topic :: Office/Business',
    ],
    keywords='cryptography pki x509 pdf pkcs11 pkcs7 cms asn1',
    packages=find_packages(exclude=['examples', 'tests', 'docs']),
    include_package_data=True,
    platforms=["all"],
    python_requires='>=3.8',
    install_requires=['cryptography>=43', 'pyasn1', 'pyasn1-modules', 'pypdf', 'certifi'],
    extras_require={
        'pkcs11': ['PyKCS11'],
        'test': ['pytest'],
    },
    entry_points={
        'console_scripts': ['ppksign=ppksign.__main__:main'],
    },
    test_suite="tests",
)
