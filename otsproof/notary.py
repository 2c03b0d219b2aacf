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

"""Time attestations: the leaves of a timestamp"""

import functools

from bitcoin.core import b2x

from otsproof.serialize import BytesDeserializationContext, BytesSerializationContext, DeserializationError


@functools.total_ordering
class TimeAttestation:
    """Time-attesting signature

    Every attestation carries an 8 byte tag and a length-prefixed payload, so
    attestations we don't understand can still be skipped over and preserved.
    """

    TAG = None
    TAG_SIZE = 8

    MAX_PAYLOAD_SIZE = 8192
    """Maximum size of a attestation payload"""

    def _serialize_payload(self, ctx):
        raise NotImplementedError

    def _key(self):
        raise NotImplementedError

    def __eq__(self, other):
        if isinstance(other, TimeAttestation):
            return self.TAG == other.TAG and self._key() == other._key()
        return NotImplemented

    def __lt__(self, other):
        if isinstance(other, TimeAttestation):
            if self.TAG != other.TAG:
                return self.TAG < other.TAG
            return self._key() < other._key()
        return NotImplemented

    def __hash__(self):
        return hash((self.TAG, self._key()))

    def serialize(self, ctx):
        ctx.write_bytes(self.TAG)

        payload_ctx = BytesSerializationContext()
        self._serialize_payload(payload_ctx)

        ctx.write_varbytes(payload_ctx.getbytes())

    @classmethod
    def deserialize(cls, ctx):
        tag = ctx.read_bytes(cls.TAG_SIZE)

        serialized_attestation = ctx.read_varbytes(cls.MAX_PAYLOAD_SIZE)

        payload_ctx = BytesDeserializationContext(serialized_attestation)

        if tag == PendingAttestation.TAG:
            r = PendingAttestation.deserialize(payload_ctx)
        elif tag == BitcoinBlockHeaderAttestation.TAG:
            r = BitcoinBlockHeaderAttestation.deserialize(payload_ctx)
        else:
            return UnknownAttestation(tag, serialized_attestation)

        # Trailing payload bytes would be lost on re-serialization
        payload_ctx.assert_eof()
        return r


class UnknownAttestation(TimeAttestation):
    """Placeholder for attestations we don't understand

    The tag and payload are kept verbatim so that re-serializing the proof
    reproduces it bit for bit.
    """

    def __init__(self, tag, payload):
        if not isinstance(tag, bytes):
            raise TypeError("tag must be bytes instance; got %r" % tag.__class__)
        elif len(tag) != self.TAG_SIZE:
            raise ValueError("tag must be exactly %d bytes long; got %d" % (self.TAG_SIZE, len(tag)))

        if not isinstance(payload, bytes):
            raise TypeError("payload must be bytes instance; got %r" % payload.__class__)
        elif len(payload) > self.MAX_PAYLOAD_SIZE:
            raise ValueError("payload must be <= %d bytes long; got %d" % (self.MAX_PAYLOAD_SIZE, len(payload)))

        if tag in (PendingAttestation.TAG, BitcoinBlockHeaderAttestation.TAG):
            raise ValueError("tag %s belongs to a known attestation type" % b2x(tag))

        self.TAG = tag
        self.payload = payload

    def __repr__(self):
        return 'UnknownAttestation(%r, %r)' % (self.TAG, self.payload)

    def __str__(self):
        return 'Unknown attestation type %s: %s' % (b2x(self.TAG), b2x(self.payload))

    def _key(self):
        return self.payload

    def _serialize_payload(self, ctx):
        ctx.write_bytes(self.payload)


# Note how neither of these signatures actually has the time...

class PendingAttestation(TimeAttestation):
    """Pending attestation

    The commitment has been submitted to a remote calendar, which promises to
    keep it and eventually return a more complete timestamp. Only the URI of
    that calendar is recorded; upgrading means asking it again.
    """

    TAG = bytes.fromhex('83dfe30d2ef90c8e')

    MAX_URI_LENGTH = 1000
    """Maximum legal URI length, in bytes"""

    ALLOWED_URI_CHARS = b"ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_/:."
    """Characters allowed in URI's

    Note how we've left out the characters necessary for parameters, queries,
    or fragments, as well as IPv6 [] notation, percent-encoding special
    characters, and @ login notation. Hopefully this keeps us out of trouble!
    """

    @classmethod
    def check_uri(cls, uri):
        """Check URI for validity

        Raises ValueError appropriately
        """
        if len(uri) > cls.MAX_URI_LENGTH:
            raise ValueError("URI exceeds maximum length")
        for char in uri:
            if char not in cls.ALLOWED_URI_CHARS:
                raise ValueError("URI contains invalid character %r" % bytes([char]))

    def __init__(self, uri):
        if not isinstance(uri, str):
            raise TypeError("URI must be a string")
        self.check_uri(uri.encode())
        self.uri = uri

    def __repr__(self):
        return 'PendingAttestation(%r)' % self.uri

    def __str__(self):
        return 'Pending confirmation in calendar %s' % self.uri

    def _key(self):
        return self.uri

    def _serialize_payload(self, ctx):
        ctx.write_varbytes(self.uri.encode())

    @classmethod
    def deserialize(cls, ctx):
        utf8_uri = ctx.read_varbytes(cls.MAX_URI_LENGTH)

        try:
            cls.check_uri(utf8_uri)
        except ValueError as exp:
            raise DeserializationError("Invalid URI: %r" % exp)

        return PendingAttestation(utf8_uri.decode())


class BitcoinBlockHeaderAttestation(TimeAttestation):
    """Signed by the Bitcoin blockchain

    The commitment digest is the merkle root of the block header at the
    recorded height. Nothing else about the block is recorded: verifiers look
    the header up by height and compare merkle roots, and the attested time
    comes from that header.
    """

    TAG = bytes.fromhex('0588960d73d71901')

    def __init__(self, height):
        if not isinstance(height, int):
            raise TypeError("height must be an integer; got %r" % height.__class__)
        elif height < 0:
            raise ValueError("height must be non-negative; got %d" % height)
        self.height = height

    def __repr__(self):
        return 'BitcoinBlockHeaderAttestation(%r)' % self.height

    def __str__(self):
        return 'Bitcoin block %d' % self.height

    def _key(self):
        return self.height

    def _serialize_payload(self, ctx):
        ctx.write_varuint(self.height)

    @classmethod
    def deserialize(cls, ctx):
        height = ctx.read_varuint()
        return BitcoinBlockHeaderAttestation(height)
