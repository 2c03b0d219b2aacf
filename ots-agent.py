#!/usr/bin/env python3
# Copyright (C) 2018-2026 The OpenTimestamps developers
#
# This file is part of the OpenTimestamps proof tools.
#
# It is subject to the license terms in the LICENSE file found in the top-level
# directory of this distribution.
#
# No part of the OpenTimestamps proof tools including this file, may be copied,
# modified, propagated, or distributed except according to the terms contained
# in the LICENSE file.

import logging
import sys

import otsagent.args

args = otsagent.args.parse_args()
otsagent.args.setup_logging(args)

logging.debug("Bitcoin network is %s" % args.btc_net)

try:
    sys.exit(args.cmd_func(args))
except KeyboardInterrupt:
    sys.exit(1)

# vim:syntax=python filetype=python
