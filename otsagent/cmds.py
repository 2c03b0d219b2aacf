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

"""Command implementations

Each command takes the parsed arguments and returns the process exit status.
"""

import collections
import logging
import os
import time

from bitcoin.core import b2x

from otsproof.op import OpAppend, OpSHA256
from otsproof.serialize import BytesDeserializationContext, BytesSerializationContext, DeserializationError
from otsproof.timestamp import DetachedTimestampFile, make_merkle_tree

from otsagent._internal import FileAlreadyLockedError, exclusive_lockf, shared_lockf, rewrite_locked_file
from otsagent.bitcoin import BitcoinCoreBackend, CrossCheckBackend, ElectrumBackend, EsploraBackend
from otsagent.calendar import DEFAULT_AGGREGATORS, StampFailedError, create_timestamp, upgrade_timestamp
from otsagent.verify import AttestationMismatchError, verify_timestamp

NONCE_LENGTH = 16


def serialize_timestamp_file(detached_timestamp):
    ctx = BytesSerializationContext()
    detached_timestamp.serialize(ctx)
    return ctx.getbytes()


def deserialize_timestamp_file(serialized):
    ctx = BytesDeserializationContext(serialized)
    return DetachedTimestampFile.deserialize(ctx)


def read_timestamp_file(path):
    """Read and parse a proof file, under a shared lock"""
    with open(path, 'rb') as fd:
        with shared_lockf(fd):
            return deserialize_timestamp_file(fd.read())


def stamp_command(args):
    # Only the merkle tip gets sent to the calendars; each file's own
    # timestamp is nonced first so calendars learn nothing about the file
    file_timestamps = []
    merkle_roots = []
    status = 0

    for path in collections.OrderedDict.fromkeys(args.files):
        ots_path = path + '.ots'
        if os.path.exists(ots_path):
            logging.error("%s: timestamp proof %s already exists; not overwriting" % (path, ots_path))
            status = 1
            continue

        try:
            with open(path, 'rb') as fd:
                file_timestamp = DetachedTimestampFile.from_fd(OpSHA256(), fd)
        except OSError as exp:
            logging.error("%s: could not read file: %s" % (path, exp))
            status = 1
            continue

        nonce_appended_stamp = file_timestamp.timestamp.ops.add(OpAppend(os.urandom(NONCE_LENGTH)))
        merkle_root = nonce_appended_stamp.ops.add(OpSHA256())

        logging.debug("%s: file digest %s" % (path, b2x(file_timestamp.file_digest)))
        file_timestamps.append((path, file_timestamp))
        merkle_roots.append(merkle_root)

    if not merkle_roots:
        logging.error("Nothing to timestamp")
        return 1

    merkle_tip = make_merkle_tree(merkle_roots)

    calendar_urls = args.calendar_urls or list(DEFAULT_AGGREGATORS)

    try:
        result = create_timestamp(merkle_tip, calendar_urls, timeout=args.timeout, min_resp=args.min_resp)
    except StampFailedError as exp:
        for error in exp.failures.values():
            logging.error("Calendar error: %s" % error)
        logging.error("Failed to create timestamp: %s" % exp)
        return 1

    for error in result.failures.values():
        logging.warning("Calendar did not respond: %s" % error)

    for path, file_timestamp in file_timestamps:
        ots_path = path + '.ots'
        try:
            with open(ots_path, 'xb') as fd:
                fd.write(serialize_timestamp_file(file_timestamp))
        except OSError as exp:
            logging.error("%s: could not write timestamp proof %s: %s" % (path, ots_path, exp))
            status = 1
            continue

        logging.info("Timestamp written to %s" % ots_path)

    return status


def info_command(args):
    try:
        detached_timestamp = read_timestamp_file(args.timestamp_file)
    except (OSError, DeserializationError) as exp:
        logging.error("%s: could not read timestamp proof: %s" % (args.timestamp_file, exp))
        return 1

    print("File %s hash: %s" % (detached_timestamp.file_hash_op.TAG_NAME, b2x(detached_timestamp.file_digest)))
    print("Timestamp:")
    print(detached_timestamp.timestamp.str_tree(verbosity=args.verbosity), end='')
    return 0


def upgrade_file(path, args):
    """Upgrade a single proof file in place

    Returns True on success, even if nothing could be upgraded yet.
    """
    mode, lockf = ('rb', shared_lockf) if args.dry_run else ('rb+', exclusive_lockf)

    with open(path, mode) as fd:
        with lockf(fd, block=False):
            original = fd.read()
            detached_timestamp = deserialize_timestamp_file(original)

            result = upgrade_timestamp(detached_timestamp.timestamp, whitelist=args.whitelist,
                                       timeout=args.timeout)

            for calendar_uri, commitment in result.skipped:
                logging.warning("%s: calendar %s not in whitelist; use --whitelist to add it" %
                                (path, calendar_uri))
            for calendar_uri, commitment in result.not_found:
                logging.warning("%s: calendar %s doesn't know about commitment %s" %
                                (path, calendar_uri, b2x(commitment)))
            for error in result.errors.values():
                logging.warning("%s: could not reach calendar: %s" % (path, error))

            if not result.upgraded:
                logging.info("%s: nothing new; %d attestation(s) still pending" % (path, len(result.pending)))
                return True

            if detached_timestamp.timestamp.is_complete():
                logging.info("%s: timestamp complete" % path)
            else:
                logging.info("%s: timestamp upgraded, but not yet complete" % path)

            if args.dry_run:
                logging.info("%s: dry run, not saving changes" % path)
                return True

            backup_path = path + '.bak'
            try:
                with open(backup_path, 'xb') as backup_fd:
                    backup_fd.write(original)
            except FileExistsError:
                logging.warning("%s: backup %s already exists, not overwriting it" % (path, backup_path))
            else:
                logging.debug("%s: backed up to %s" % (path, backup_path))

            rewrite_locked_file(fd, serialize_timestamp_file(detached_timestamp))
            logging.info("%s: upgraded" % path)

    return True


def upgrade_command(args):
    status = 0
    for path in args.files:
        try:
            upgrade_file(path, args)
        except FileAlreadyLockedError as exp:
            logging.error("%s: %s" % (path, exp))
            status = 1
        except (OSError, DeserializationError) as exp:
            logging.error("%s: could not upgrade timestamp proof: %s" % (path, exp))
            status = 1
    return status


def make_backend(args):
    """Create the block backend selected on the command line

    More than one backend means all of them are asked, and must agree.
    """
    backends = []
    for name in args.backends or ['electrum']:
        if name == 'core':
            backends.append(BitcoinCoreBackend(service_url=args.bitcoin_node, btc_conf_file=args.btc_conf_file,
                                               timeout=args.timeout))

        elif name == 'esplora':
            url = args.esplora_url or EsploraBackend.DEFAULT_URLS.get(args.btc_net)
            if url is None:
                raise ValueError("No default Esplora server for %s; use --esplora-url" % args.btc_net)
            backends.append(EsploraBackend(url, timeout=args.timeout))

        elif name == 'electrum':
            server = args.electrum_server or ElectrumBackend.DEFAULT_SERVERS.get(args.btc_net)
            if server is None:
                raise ValueError("No default Electrum server for %s; use --electrum-server" % args.btc_net)
            backends.append(ElectrumBackend.from_server_string(server, timeout=args.timeout))

        else:
            raise ValueError("Unknown backend %r" % name)

    if len(backends) == 1:
        return backends[0]
    return CrossCheckBackend(backends)


def verify_command(args):
    path = args.timestamp_file
    try:
        detached_timestamp = read_timestamp_file(path)
    except (OSError, DeserializationError) as exp:
        logging.error("%s: could not read timestamp proof: %s" % (path, exp))
        return 1

    if args.hex_digest is not None:
        try:
            digest = bytes.fromhex(args.hex_digest)
        except ValueError:
            logging.error("%s: digest %r isn't hex" % (path, args.hex_digest))
            return 1

        if digest != detached_timestamp.file_digest:
            logging.error("%s: digest %s does not match the timestamped digest %s" %
                          (path, b2x(digest), b2x(detached_timestamp.file_digest)))
            return 1

    else:
        target = args.target
        if target is None:
            if not path.endswith('.ots'):
                logging.error("%s: can't determine the timestamped file; use -f" % path)
                return 1
            target = path[:-len('.ots')]

        logging.debug("Hashing %s" % target)
        try:
            with open(target, 'rb') as fd:
                actual_digest = detached_timestamp.file_hash_op.hash_fd(fd)
        except OSError as exp:
            logging.error("%s: could not read %s: %s" % (path, target, exp))
            return 1

        if actual_digest != detached_timestamp.file_digest:
            logging.error("%s: %s does not match the timestamped file! Expected %s, got %s" %
                          (path, target, b2x(detached_timestamp.file_digest), b2x(actual_digest)))
            return 1

    try:
        backend = make_backend(args)
    except ValueError as exp:
        logging.error(str(exp))
        return 1

    try:
        report = verify_timestamp(detached_timestamp.timestamp, backend)
    except AttestationMismatchError as exp:
        logging.error("%s: attestation mismatch: %s" % (path, exp))
        return 1

    for digest, attestation, error in report.errors:
        logging.warning("%s: could not verify %s: %s" % (path, attestation, error))

    for pending in report.pending:
        logging.info("%s: pending confirmation in calendar %s" % (path, pending.uri))

    for unverifiable in report.unverifiable:
        logging.info("%s: can't verify %s" % (path, unverifiable.attestation))

    earliest = report.earliest()
    if earliest is None:
        if report.errors:
            logging.error("%s: could not verify timestamp" % path)
        else:
            logging.error("%s: timestamp not complete; try upgrading it" % path)
        return 1

    logging.info("Success! Bitcoin block %d attests existence as of %s" %
                 (earliest.height, time.strftime('%Y-%m-%d %H:%M:%S UTC', time.gmtime(earliest.block_time))))
    return 0
