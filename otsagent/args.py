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

import argparse
import logging.handlers
import os
import sys

import bitcoin

import otsagent
import otsagent.cmds
from otsagent.calendar import DEFAULT_CALENDAR_WHITELIST, UrlWhitelist


def make_arg_parser():
    parser = argparse.ArgumentParser(description="OpenTimestamps proof agent: stamp, upgrade and verify timestamps")

    parser.add_argument("--version", action="version", version="%(prog)s " + otsagent.__version__)
    parser.add_argument("-q", "--quiet", action="count", default=0,
                        help="Be more quiet.")
    parser.add_argument("-v", "--verbose", action="count", default=0,
                        help="Be more verbose. Both -v and -q may be used multiple times.")

    parser.add_argument("--debug-file", type=str,
                        dest='debug_file',
                        default=None,
                        help="Also write a debug log to this file")
    parser.add_argument("--debug-file-max-size", type=int,
                        dest='debug_file_max_size',
                        default=10000000,
                        help="Max size of the debug log (default: %(default)d bytes) ")

    parser.add_argument('--btc-testnet', dest='btc_net', action='store_const',
                        const='testnet', default='mainnet',
                        help='Use Bitcoin testnet rather than mainnet')
    parser.add_argument('--btc-regtest', dest='btc_net', action='store_const',
                        const='regtest',
                        help='Use Bitcoin regtest rather than mainnet')

    parser.add_argument("--timeout", type=float, default=10,
                        help="Timeout for each calendar and backend request (default: %(default)s seconds)")

    parser.add_argument("--whitelist", metavar='URL', action='append', type=str,
                        dest='whitelist_urls', default=[],
                        help="Add a calendar to the whitelist used when upgrading. Glob patterns are "
                             "allowed in the host, e.g. 'https://*.example.com'")
    parser.add_argument("--no-default-whitelist", action='store_false',
                        dest='use_default_whitelist', default=True,
                        help="Don't use the default calendar whitelist")

    backend_group = parser.add_argument_group('Bitcoin backends')
    backend_group.add_argument("--backend", metavar='BACKEND', action='append',
                               dest='backends', choices=('core', 'esplora', 'electrum'),
                               help="Where to look up Bitcoin blocks: core, esplora or electrum "
                                    "(default: electrum). Repeat to cross-check several.")
    backend_group.add_argument("--bitcoin-node", metavar='URL', type=str, default=None,
                               help="Bitcoin Core RPC URL (default: from bitcoin.conf)")
    backend_group.add_argument("--btc-conf", metavar='FILE', type=str, dest='btc_conf_file', default=None,
                               help="Location of bitcoin.conf")
    backend_group.add_argument("--esplora-url", metavar='URL', type=str, default=None,
                               help="Esplora API base URL (default: Blockstream's)")
    backend_group.add_argument("--electrum-server", metavar='HOST:PORT[:s|t]', type=str, default=None,
                               help="Electrum server; s for TLS, t for plain TCP (default: Blockstream's)")

    subparsers = parser.add_subparsers(title='Subcommands', dest='cmd',
                                       description='All operations are done through subcommands:')

    # ----- stamp -----
    parser_stamp = subparsers.add_parser('stamp', aliases=['s'],
                                         help='Timestamp files')
    parser_stamp.add_argument('files', metavar='FILE', type=str, nargs='+',
                              help='Filename')
    parser_stamp.add_argument('-c', '--calendar', metavar='URL', dest='calendar_urls', action='append', type=str,
                              default=[],
                              help='Create timestamp with the aid of a remote calendar. May be specified multiple times.')
    parser_stamp.add_argument('-m', dest='min_resp', metavar='M', type=int, default=1,
                              help='Timestamp is complete when at least M calendars reply '
                                   '(default: 1)')
    parser_stamp.set_defaults(cmd_func=otsagent.cmds.stamp_command)

    # ----- info -----
    parser_info = subparsers.add_parser('info', aliases=['i'],
                                        help='Show information on a timestamp')
    parser_info.add_argument('timestamp_file', metavar='TIMESTAMP', type=str,
                             help='Filename')
    parser_info.set_defaults(cmd_func=otsagent.cmds.info_command)

    # ----- upgrade -----
    parser_upgrade = subparsers.add_parser('upgrade', aliases=['u'],
                                           help='Upgrade remote calendar timestamps to be locally verifiable')
    parser_upgrade.add_argument('files', metavar='FILE', type=str, nargs='+',
                                help='Existing timestamp(s); moved to FILE.bak')
    parser_upgrade.add_argument('-n', '--dry-run', action='store_true', default=False,
                                help='Perform a trial upgrade without modifying the existing timestamp.')
    parser_upgrade.set_defaults(cmd_func=otsagent.cmds.upgrade_command)

    # ----- verify -----
    parser_verify = subparsers.add_parser('verify', aliases=['v'],
                                          help="Verify a timestamp")
    parser_verify.add_argument('timestamp_file', metavar='TIMESTAMP', type=str,
                               help="Timestamp filename")
    verify_target_group = parser_verify.add_mutually_exclusive_group()
    verify_target_group.add_argument('-f', metavar='FILE', dest='target', type=str, default=None,
                                     help='Specify target file explicitly (default: TIMESTAMP minus .ots)')
    verify_target_group.add_argument('-d', '--digest', metavar='DIGEST', dest='hex_digest', type=str, default=None,
                                     help='Verify a (hex-encoded) digest rather than a file')
    parser_verify.set_defaults(cmd_func=otsagent.cmds.verify_command)

    return parser


def parse_args(argv=None):
    parser = make_arg_parser()
    args = parser.parse_args(argv)
    args.parser = parser

    if not hasattr(args, 'cmd_func'):
        parser.error('A subcommand is required')

    args.verbosity = args.verbose - args.quiet

    bitcoin.SelectParams(args.btc_net)

    whitelist_urls = list(args.whitelist_urls)
    if args.use_default_whitelist:
        whitelist_urls = list(DEFAULT_CALENDAR_WHITELIST) + whitelist_urls
    try:
        args.whitelist = UrlWhitelist(whitelist_urls)
    except ValueError as exp:
        parser.error(str(exp))

    if getattr(args, 'min_resp', None) is not None and args.min_resp < 1:
        parser.error('-m must be at least 1')

    return args


def setup_logging(args):
    logger = logging.getLogger('')

    ch = logging.StreamHandler(sys.stderr)
    logger.addHandler(ch)

    if args.debug_file is not None:
        debugfile = os.path.expanduser(args.debug_file)
        handler = logging.handlers.RotatingFileHandler(filename=debugfile, maxBytes=args.debug_file_max_size)
        fmt = logging.Formatter("%(asctime)-15s %(message)s")
        handler.setFormatter(fmt)
        logger.addHandler(handler)

    if args.verbosity == 0:
        logging.root.setLevel(logging.INFO)
    elif args.verbosity > 0:
        logging.root.setLevel(logging.DEBUG)
    elif args.verbosity == -1:
        logging.root.setLevel(logging.WARNING)
    elif args.verbosity < -1:
        logging.root.setLevel(logging.ERROR)
