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

"""Stamping, upgrading and verifying timestamps against calendars and Bitcoin"""

import otsproof

__version__ = otsproof.__version__
