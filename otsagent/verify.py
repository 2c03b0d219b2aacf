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

"""Checking attestations against the Bitcoin blockchain"""

import collections
import logging

from bitcoin.core import b2lx

from otsproof.notary import BitcoinBlockHeaderAttestation, PendingAttestation
from otsproof.timestamp import evaluate

from otsagent.bitcoin import BackendConflictError, BackendError, CachingBackend

Verified = collections.namedtuple('Verified', ['height', 'block_time'])
Pending = collections.namedtuple('Pending', ['uri'])
Unverifiable = collections.namedtuple('Unverifiable', ['attestation'])


class VerificationError(Exception):
    """An attestation could not be checked

    The proof itself may well be fine; the block may not be mined yet, or the
    backend may be unreachable.
    """


class AttestationMismatchError(VerificationError):
    """The blockchain contradicts the attestation

    Either the proof has been tampered with, or something is badly wrong with
    whoever produced it. Never treat this as a soft failure.
    """

    def __init__(self, msg, height=None):
        super().__init__(msg)
        self.height = height


def verify_attestation(digest, attestation, backend):
    """Verify a single attestation for digest

    Returns Verified, Pending or Unverifiable. Pending attestations are never
    looked up; finding out what happened to them is what upgrading is for.

    Raises VerificationError if the backend can't answer, and
    AttestationMismatchError if the answer contradicts the attestation.
    """
    if isinstance(attestation, PendingAttestation):
        return Pending(attestation.uri)

    elif isinstance(attestation, BitcoinBlockHeaderAttestation):
        height = attestation.height

        if len(digest) != 32:
            raise AttestationMismatchError("Expected a 32 byte digest for Bitcoin block %d; got %d bytes" %
                                           (height, len(digest)), height)

        try:
            block_info = backend.resolve_block(height)
        except BackendConflictError as exp:
            raise AttestationMismatchError(str(exp), height)
        except BackendError as exp:
            raise VerificationError("Could not get Bitcoin block %d: %s" % (height, exp))

        if block_info.merkle_root != digest:
            raise AttestationMismatchError("Digest %s does not match merkle root %s of Bitcoin block %d" %
                                           (b2lx(digest), b2lx(block_info.merkle_root), height), height)

        return Verified(height, block_info.block_time)

    else:
        return Unverifiable(attestation)


class VerificationReport:
    """Outcome of verifying every attestation of a timestamp

    results holds (digest, attestation, result) for every attestation that
    could be checked, errors holds (digest, attestation, VerificationError)
    for those that could not.
    """

    def __init__(self):
        self.results = []
        self.errors = []

    def __repr__(self):
        return 'VerificationReport(results=%r, errors=%r)' % (self.results, self.errors)

    def __of_type(self, cls):
        return [result for digest, attestation, result in self.results if isinstance(result, cls)]

    @property
    def verified(self):
        return self.__of_type(Verified)

    @property
    def pending(self):
        return self.__of_type(Pending)

    @property
    def unverifiable(self):
        return self.__of_type(Unverifiable)

    def earliest(self):
        """The Verified result with the earliest block time, or None"""
        verified = self.verified
        if not verified:
            return None
        return min(verified, key=lambda result: (result.block_time, result.height))


def verify_timestamp(timestamp, backend, msg=None):
    """Verify every attestation of a timestamp

    Every path is evaluated starting from msg, by default the timestamp's own
    message. Block lookups are cached for the duration of the call.

    Backend failures are collected in the report; AttestationMismatchError is
    raised as soon as it's found.
    """
    backend = CachingBackend(backend)
    report = VerificationReport()

    for digest, attestation in evaluate(timestamp, msg):
        try:
            result = verify_attestation(digest, attestation, backend)

        except AttestationMismatchError:
            raise

        except VerificationError as exp:
            logging.debug("Could not verify %s: %s" % (attestation, exp))
            report.errors.append((digest, attestation, exp))

        else:
            report.results.append((digest, attestation, result))

    return report
