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

import hashlib
import http.server
import os
import socketserver
import threading
import unittest

from otsproof.notary import BitcoinBlockHeaderAttestation, PendingAttestation
from otsproof.op import OpAppend, OpReverse, OpSHA256
from otsproof.serialize import BytesSerializationContext
from otsproof.timestamp import Timestamp

from ..calendar import *
from ..calendar import _fan_out


def serialize_timestamp(timestamp):
    ctx = BytesSerializationContext()
    timestamp.serialize(ctx)
    return ctx.getbytes()


class CalendarRequestHandler(http.server.BaseHTTPRequestHandler):
    def log_message(self, format, *args):
        pass

    def send(self, status, body, content_type='application/octet-stream'):
        self.send_response(status)
        self.send_header('Content-Type', content_type)
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def send_mode_response(self):
        """Handle the failure modes; returns True if a response was sent"""
        mode = self.server.mode
        if mode == 'slow':
            self.server.unblock.wait(10)
            self.send(500, b'too late')
        elif mode == 'error':
            self.send(500, b'Internal server error', 'text/plain')
        elif mode == 'oversized':
            self.send(200, b'\x00' * (RemoteCalendar.MAX_RESPONSE_LENGTH + 1))
        elif mode == 'garbage':
            self.send(200, b'\xff\xff\xff')
        else:
            return False
        return True

    def do_POST(self):
        self.server.requests.append((self.command, self.path, dict(self.headers)))

        if self.path != '/digest':
            self.send(404, b'Not found', 'text/plain')
            return

        digest = self.rfile.read(int(self.headers['Content-Length']))
        if self.send_mode_response():
            return

        timestamp = Timestamp(digest)
        commitment_stamp = timestamp.ops.add(OpAppend(os.urandom(16))).ops.add(OpSHA256())
        commitment_stamp.attestations.add(PendingAttestation(self.server.url))

        self.server.pending.add(commitment_stamp.msg)
        self.send(200, serialize_timestamp(timestamp))

    def do_GET(self):
        self.server.requests.append((self.command, self.path, dict(self.headers)))

        if not self.path.startswith('/timestamp/'):
            self.send(404, b'Not found', 'text/plain')
            return

        if self.send_mode_response():
            return

        commitment = bytes.fromhex(self.path[len('/timestamp/'):])
        if commitment in self.server.upgraded:
            self.send(200, serialize_timestamp(self.server.upgraded[commitment]))
        elif commitment in self.server.pending:
            self.send(404, self.server.pending_reason, 'text/plain')
        else:
            self.send(404, b'Not found', 'text/plain')


class CalendarServer(socketserver.ThreadingMixIn, http.server.HTTPServer):
    """Minimal calendar server on localhost

    Submissions get a pending attestation to this server; upgrade() makes a
    commitment complete, attested by a Bitcoin block.
    """

    daemon_threads = True
    block_on_close = False

    def __init__(self):
        super().__init__(('127.0.0.1', 0), CalendarRequestHandler)
        host, port = self.server_address
        self.url = 'http://%s:%d' % (host, port)
        self.mode = 'ok'
        self.unblock = threading.Event()
        self.requests = []
        self.pending = set()
        self.pending_reason = b'Pending confirmation in Bitcoin blockchain'
        self.upgraded = {}

    def handle_error(self, request, client_address):
        # clients that gave up on a slow response
        pass

    def upgrade(self, commitment, height=100):
        timestamp = Timestamp(commitment)
        timestamp.ops.add(OpSHA256()).attestations.add(BitcoinBlockHeaderAttestation(height))
        self.upgraded[commitment] = timestamp
        return timestamp


def start_calendar_server(test_case):
    """Start a CalendarServer, stopped again when test_case is cleaned up"""
    server = CalendarServer()
    thread = threading.Thread(target=server.serve_forever)
    thread.start()

    def stop():
        server.unblock.set()
        server.shutdown()
        server.server_close()
        thread.join()
    test_case.addCleanup(stop)

    return server


def pending_commitments(timestamp, uri):
    return [msg for msg, attestation in timestamp.all_attestations()
            if attestation == PendingAttestation(uri)]


class Test_RemoteCalendar(unittest.TestCase):
    def setUp(self):
        self.server = start_calendar_server(self)
        self.calendar = RemoteCalendar(self.server.url, timeout=5)

    def test_submit(self):
        digest = b'\x01' * 32
        timestamp = self.calendar.submit(digest)

        self.assertEqual(timestamp.msg, digest)
        self.assertEqual(len(pending_commitments(timestamp, self.server.url)), 1)

        method, path, headers = self.server.requests[0]
        self.assertEqual((method, path), ('POST', '/digest'))
        self.assertEqual(headers['Accept'], 'application/vnd.opentimestamps.v1')
        self.assertTrue(headers['User-Agent'].startswith('ots-agent/'))

    def test_custom_user_agent(self):
        RemoteCalendar(self.server.url, user_agent='foo/1.0', timeout=5).submit(b'\x01' * 32)
        method, path, headers = self.server.requests[0]
        self.assertEqual(headers['User-Agent'], 'foo/1.0')

    def test_trailing_slash(self):
        calendar = RemoteCalendar(self.server.url + '/', timeout=5)
        calendar.submit(b'\x01' * 32)
        method, path, headers = self.server.requests[0]
        self.assertEqual(path, '/digest')

    def test_get_timestamp(self):
        timestamp = self.calendar.submit(b'\x01' * 32)
        [commitment] = pending_commitments(timestamp, self.server.url)

        with self.assertRaises(CommitmentPendingError):
            self.calendar.get_timestamp(commitment)

        self.server.upgrade(commitment)
        upgraded = self.calendar.get_timestamp(commitment)
        self.assertEqual(upgraded.msg, commitment)
        self.assertTrue(upgraded.is_complete())

        method, path, headers = self.server.requests[-1]
        self.assertEqual((method, path), ('GET', '/timestamp/' + commitment.hex()))

    def test_get_timestamp_not_found(self):
        with self.assertRaises(CommitmentNotFoundError):
            self.calendar.get_timestamp(b'\x02' * 32)

    def test_get_timestamp_waiting_for_confirmations(self):
        timestamp = self.calendar.submit(b'\x01' * 32)
        [commitment] = pending_commitments(timestamp, self.server.url)

        # Already in a transaction, but not yet deep enough
        self.server.pending_reason = b'Timestamped by transaction ab; waiting for 5 confirmations'
        with self.assertRaises(CommitmentPendingError) as cm:
            self.calendar.get_timestamp(commitment)
        self.assertIn('waiting for 5 confirmations', str(cm.exception))

        self.server.pending_reason = b'NOT FOUND'
        with self.assertRaises(CommitmentNotFoundError):
            self.calendar.get_timestamp(commitment)

    def test_error_names_calendar_once(self):
        self.server.mode = 'error'
        with self.assertRaises(CalendarError) as cm:
            self.calendar.submit(b'\x02' * 32)
        self.assertTrue(str(cm.exception).startswith(self.server.url + ': '))
        self.assertEqual(str(cm.exception).count(self.server.url), 1)

    def test_server_error(self):
        self.server.mode = 'error'
        with self.assertRaises(CalendarError) as cm:
            self.calendar.get_timestamp(b'\x02' * 32)
        self.assertNotIsInstance(cm.exception, (CommitmentPendingError, CommitmentNotFoundError))

        with self.assertRaises(CalendarError):
            self.calendar.submit(b'\x02' * 32)

    def test_oversized_response(self):
        self.server.mode = 'oversized'
        with self.assertRaises(CalendarError):
            self.calendar.submit(b'\x02' * 32)

    def test_invalid_timestamp(self):
        self.server.mode = 'garbage'
        with self.assertRaises(CalendarError):
            self.calendar.submit(b'\x02' * 32)
        with self.assertRaises(CalendarError):
            self.calendar.get_timestamp(b'\x02' * 32)

    def test_timeout(self):
        self.server.mode = 'slow'
        with self.assertRaises(CalendarError):
            RemoteCalendar(self.server.url, timeout=0.2).submit(b'\x02' * 32)

    def test_connection_refused(self):
        url = self.server.url
        self.server.shutdown()
        self.server.server_close()
        with self.assertRaises(CalendarError):
            RemoteCalendar(url, timeout=5).submit(b'\x02' * 32)

    def test_url_must_be_str(self):
        with self.assertRaises(TypeError):
            RemoteCalendar(b'https://example.com')


class Test_UrlWhitelist(unittest.TestCase):
    def test_exact_match(self):
        whitelist = UrlWhitelist(['https://alice.example.com'])
        self.assertIn('https://alice.example.com', whitelist)
        self.assertIn('https://alice.example.com/', whitelist)
        self.assertIn('https://ALICE.example.com', whitelist)
        self.assertNotIn('http://alice.example.com', whitelist)
        self.assertNotIn('https://bob.example.com', whitelist)
        self.assertNotIn('https://alice.example.com/foo', whitelist)
        self.assertNotIn('https://alice.example.com?foo=bar', whitelist)

    def test_glob(self):
        whitelist = UrlWhitelist(['https://*.calendar.opentimestamps.org'])
        self.assertIn('https://alice.calendar.opentimestamps.org', whitelist)
        self.assertIn('https://bob.calendar.opentimestamps.org', whitelist)
        self.assertNotIn('https://calendar.opentimestamps.org', whitelist)
        self.assertNotIn('https://alice.calendar.opentimestamps.org.evil.com', whitelist)
        self.assertNotIn('http://alice.calendar.opentimestamps.org', whitelist)

    def test_no_scheme(self):
        whitelist = UrlWhitelist(['alice.example.com'])
        self.assertIn('https://alice.example.com', whitelist)
        self.assertIn('http://alice.example.com', whitelist)

    def test_default_whitelist(self):
        whitelist = UrlWhitelist(DEFAULT_CALENDAR_WHITELIST)
        self.assertIn('https://alice.btc.calendar.opentimestamps.org', whitelist)
        self.assertIn('https://finney.calendar.eternitywall.com', whitelist)
        self.assertNotIn('https://a.pool.opentimestamps.org', whitelist)

    def test_invalid(self):
        with self.assertRaises(ValueError):
            UrlWhitelist(['ftp://example.com'])
        with self.assertRaises(ValueError):
            UrlWhitelist(['https://example.com/?q=1'])
        with self.assertRaises(TypeError):
            UrlWhitelist([b'https://example.com'])


class Test_fan_out(unittest.TestCase):
    def test_timeout(self):
        unblock = threading.Event()
        self.addCleanup(unblock.set)

        def fn(item):
            if item == 'slow':
                unblock.wait(10)
            elif item == 'broken':
                raise CalendarError('broken')
            return item.upper()

        outcomes = _fan_out(fn, ['fast', 'slow', 'broken'], 0.5, label=str.upper)
        results = {item: (result, error) for item, result, error in outcomes}

        self.assertEqual(results['fast'], ('FAST', None))
        self.assertIsNone(results['slow'][0])
        self.assertIsInstance(results['slow'][1], CalendarError)
        self.assertEqual(str(results['slow'][1]), 'SLOW: timed out after 0.5 seconds')
        self.assertIsNone(results['broken'][0])
        self.assertEqual(str(results['broken'][1]), 'broken')

    def test_empty(self):
        self.assertEqual(list(_fan_out(lambda item: item, [], 1)), [])


class Test_create_timestamp(unittest.TestCase):
    def test_single_calendar(self):
        server = start_calendar_server(self)
        timestamp = Timestamp(b'\x01' * 32)

        result = create_timestamp(timestamp, [server.url], timeout=5)
        self.assertEqual(result, StampResult([server.url], {}))
        self.assertEqual(len(pending_commitments(timestamp, server.url)), 1)

    def test_multiple_calendars(self):
        servers = [start_calendar_server(self) for i in range(3)]
        timestamp = Timestamp(b'\x01' * 32)

        # duplicates are only submitted once
        urls = [server.url for server in servers]
        result = create_timestamp(timestamp, urls + urls[:1], timeout=5, min_resp=3)

        self.assertEqual(sorted(result.successes), sorted(urls))
        self.assertEqual(result.failures, {})
        for server in servers:
            self.assertEqual(len(server.requests), 1)
            self.assertEqual(len(pending_commitments(timestamp, server.url)), 1)

    def test_partial_failure(self):
        good_server = start_calendar_server(self)
        bad_server = start_calendar_server(self)
        bad_server.mode = 'error'
        timestamp = Timestamp(b'\x01' * 32)

        with self.assertLogs(level='WARNING') as logs:
            result = create_timestamp(timestamp, [good_server.url, bad_server.url], timeout=5, min_resp=1)
        self.assertEqual(result.successes, [good_server.url])
        self.assertEqual(list(result.failures), [bad_server.url])
        self.assertIsInstance(result.failures[bad_server.url], CalendarError)

        # The calendar is named once per line
        [line] = logs.output
        self.assertEqual(line.count(bad_server.url), 1)

    def test_min_resp_not_met(self):
        good_server = start_calendar_server(self)
        bad_server = start_calendar_server(self)
        bad_server.mode = 'error'
        timestamp = Timestamp(b'\x01' * 32)

        with self.assertRaises(StampFailedError) as cm:
            create_timestamp(timestamp, [good_server.url, bad_server.url], timeout=5, min_resp=2)

        self.assertEqual(cm.exception.successes, [good_server.url])
        self.assertEqual(list(cm.exception.failures), [bad_server.url])

        # The response that did arrive was still merged
        self.assertEqual(len(pending_commitments(timestamp, good_server.url)), 1)

    def test_all_failed(self):
        server = start_calendar_server(self)
        server.mode = 'error'
        timestamp = Timestamp(b'\x01' * 32)

        with self.assertRaises(StampFailedError) as cm:
            create_timestamp(timestamp, [server.url], timeout=5)
        self.assertEqual(cm.exception.successes, [])
        self.assertEqual(timestamp, Timestamp(b'\x01' * 32))

    def test_slow_calendar(self):
        fast_server = start_calendar_server(self)
        slow_server = start_calendar_server(self)
        slow_server.mode = 'slow'
        timestamp = Timestamp(b'\x01' * 32)

        result = create_timestamp(timestamp, [fast_server.url, slow_server.url], timeout=0.5)
        self.assertEqual(result.successes, [fast_server.url])
        self.assertIsInstance(result.failures[slow_server.url], CalendarError)
        self.assertTrue(str(result.failures[slow_server.url]).startswith(slow_server.url + ': '))

    def test_no_calendars(self):
        with self.assertRaises(ValueError):
            create_timestamp(Timestamp(b'\x01' * 32), [])

    def test_two_calendars_pending_at_root(self):
        digest = hashlib.sha256(b'hello').digest()

        class RootPendingCalendar:
            def __init__(self, url):
                self.url = url

            def submit(self, msg):
                timestamp = Timestamp(msg)
                timestamp.attestations.add(PendingAttestation(self.url))
                return timestamp

        timestamp = Timestamp(digest)
        urls = ['https://alice.example.com', 'https://bob.example.com']
        result = create_timestamp(timestamp, urls, calendar_factory=RootPendingCalendar, min_resp=2)

        self.assertEqual(sorted(result.successes), urls)
        self.assertEqual(set(timestamp.attestations), {PendingAttestation(url) for url in urls})
        self.assertEqual(len(timestamp.ops), 0)


class FakeCalendar:
    """Calendar whose get_timestamp() answers from a dict

    Values are either a Timestamp or a CalendarError to raise.
    """

    def __init__(self, url, answers, calls):
        self.url = url
        self.answers = answers
        self.calls = calls

    def get_timestamp(self, commitment):
        self.calls.append((self.url, commitment))
        answer = self.answers[(self.url, commitment)]
        if isinstance(answer, Exception):
            raise answer
        return answer


class Test_upgrade_timestamp(unittest.TestCase):
    ALICE = 'https://alice.example.com'
    BOB = 'https://bob.example.com'

    def upgrade(self, timestamp, answers, whitelist=(ALICE, BOB)):
        calls = []
        result = upgrade_timestamp(timestamp, whitelist=UrlWhitelist(whitelist),
                                   calendar_factory=lambda url: FakeCalendar(url, answers, calls))
        return result, calls

    def make_complete(self, msg, height=100):
        timestamp = Timestamp(msg)
        timestamp.ops.add(OpSHA256()).attestations.add(BitcoinBlockHeaderAttestation(height))
        return timestamp

    def test_upgraded(self):
        commitment = b'\x01' * 32
        timestamp = Timestamp(commitment)
        timestamp.attestations.add(PendingAttestation(self.ALICE))

        result, calls = self.upgrade(timestamp, {(self.ALICE, commitment): self.make_complete(commitment, 700000)})

        self.assertEqual(result.upgraded, [(self.ALICE, commitment)])
        self.assertEqual(result.pending, [])
        self.assertEqual(list(timestamp.all_attestations()),
                         [(OpSHA256()(commitment), BitcoinBlockHeaderAttestation(700000))])

    def test_shared_commitment_asked_once(self):
        commitment = b'\x01' * 16 + b'\x02' * 16
        timestamp = Timestamp(commitment)
        timestamp.attestations.add(PendingAttestation(self.ALICE))

        # Second node, with the same message and pending attestation
        round_trip = timestamp.ops.add(OpReverse()).ops.add(OpReverse())
        round_trip.attestations.add(PendingAttestation(self.ALICE))

        result, calls = self.upgrade(timestamp, {(self.ALICE, commitment): self.make_complete(commitment)})

        self.assertEqual(calls, [(self.ALICE, commitment)])
        self.assertEqual(result.upgraded, [(self.ALICE, commitment)])
        for node in (timestamp, round_trip):
            self.assertEqual(list(node.attestations), [])
            self.assertEqual(node.ops[OpSHA256()], self.make_complete(commitment).ops[OpSHA256()])

    def test_still_pending(self):
        commitment = b'\x01' * 32
        timestamp = Timestamp(commitment)
        timestamp.attestations.add(PendingAttestation(self.ALICE))

        result, calls = self.upgrade(timestamp, {(self.ALICE, commitment): CommitmentPendingError('pending')})
        self.assertEqual(result.pending, [(self.ALICE, commitment)])
        self.assertEqual(result.upgraded, [])
        self.assertIn(PendingAttestation(self.ALICE), timestamp.attestations)

    def test_nothing_new(self):
        commitment = b'\x01' * 32
        timestamp = Timestamp(commitment)
        timestamp.attestations.add(PendingAttestation(self.ALICE))

        same_again = Timestamp(commitment)
        same_again.attestations.add(PendingAttestation(self.ALICE))

        result, calls = self.upgrade(timestamp, {(self.ALICE, commitment): same_again})
        self.assertEqual(result.pending, [(self.ALICE, commitment)])
        self.assertEqual(result.upgraded, [])
        self.assertEqual(timestamp, same_again)

    def test_not_found_and_errors(self):
        commitment = b'\x01' * 32
        timestamp = Timestamp(commitment)
        timestamp.attestations.add(PendingAttestation(self.ALICE))
        timestamp.attestations.add(PendingAttestation(self.BOB))

        error = CalendarError('unreachable')
        result, calls = self.upgrade(timestamp, {(self.ALICE, commitment): CommitmentNotFoundError('not found'),
                                                 (self.BOB, commitment): error})

        self.assertEqual(result.not_found, [(self.ALICE, commitment)])
        self.assertEqual(result.errors, {(self.BOB, commitment): error})
        self.assertEqual(len(timestamp.attestations), 2)

    def test_not_whitelisted(self):
        commitment = b'\x01' * 32
        timestamp = Timestamp(commitment)
        timestamp.attestations.add(PendingAttestation('https://evil.example.com'))

        result, calls = self.upgrade(timestamp, {})
        self.assertEqual(result.skipped, [('https://evil.example.com', commitment)])
        self.assertEqual(calls, [])

    def test_nothing_pending(self):
        timestamp = self.make_complete(b'\x01' * 32)
        result, calls = self.upgrade(timestamp, {})
        self.assertEqual(result, UpgradeResult([], [], [], {}, []))
        self.assertEqual(calls, [])

    def test_remote_calendar(self):
        server = start_calendar_server(self)
        timestamp = Timestamp(b'\x01' * 32)
        create_timestamp(timestamp, [server.url], timeout=5)
        [commitment] = pending_commitments(timestamp, server.url)

        whitelist = UrlWhitelist([server.url])
        result = upgrade_timestamp(timestamp, whitelist=whitelist, timeout=5)
        self.assertEqual(result.pending, [(server.url, commitment)])
        self.assertFalse(timestamp.is_complete())

        server.upgrade(commitment)
        result = upgrade_timestamp(timestamp, whitelist=whitelist, timeout=5)
        self.assertEqual(result.upgraded, [(server.url, commitment)])
        self.assertTrue(timestamp.is_complete())
        self.assertEqual(pending_commitments(timestamp, server.url), [])
