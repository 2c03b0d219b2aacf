#!/usr/bin/python3
# Copyright (C) 2016-2026 The OpenTimestamps developers
#
# This file is part of the OpenTimestamps proof tools.
#
# It is subject to the license terms in the LICENSE file found in the top-level
# directory of this distribution.
#
# No part of the OpenTimestamps proof tools including this file, may be copied,
# modified, propagated, or distributed except according to the terms contained
# in the LICENSE file.

import sys

from setuptools import setup

if sys.version_info[:2] < (3, 9):
    sys.exit("Sorry, ots-agent requires version 3.9 or later of python")

setup(
    name="otsproof",
    version='0.1.0',
    description="OpenTimestamps proofs: create, upgrade and verify Bitcoin timestamps",
    author="The OpenTimestamps developers",
    url="https://github.com/opentimestamps",
    python_requires='>=3.9',
    packages=[
        'otsproof',
        'otsproof.tests',
        'otsagent',
        'otsagent.tests',
    ],
    install_requires=[
        'python-bitcoinlib>=0.11.0',
        'pycryptodomex>=3.3.1',
        'requests>=2.20',
        'simplejson>=3.8',
    ],
    extras_require={
        'test': ['pytest'],
    },
    scripts=['ots-agent.py'],
    )
