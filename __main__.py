"""
Entry point for ProcessDesk application.
This module provides a command-line interface to start the real-time server,
the REST API, or a smoke-test client.
"""

import argparse

from ProcessDesk.config import config
from ProcessDesk.start import server
from ProcessDesk.test import main as test_main


def parse():
    # Initialize argument parser for command line interface
    parser = argparse.ArgumentParser(prog='ProcessDesk', description='ProcessDesk starter')
    subparsers = parser.add_subparsers(dest='command', required=True, help='Available commands')

    # WebSocket server plus REST API on port + 1
    server_parser = subparsers.add_parser('server', help='Startup SERVER (ws + api)')
    server_parser.add_argument('--port', type=int, default=config.DEFAULT_WS_PORT,
                               help=f'SERVER port (default: {config.DEFAULT_WS_PORT})')

    srv_parser = subparsers.add_parser('srv-only', help='Startup server (ws server)')
    srv_parser.add_argument('--port', type=int, default=config.DEFAULT_WS_PORT,
                            help=f'server port (default: {config.DEFAULT_WS_PORT})')

    api_parser = subparsers.add_parser('api-only', help='Startup REST api')
    api_parser.add_argument('--port', type=int, default=config.DEFAULT_API_PORT,
                            help=f'api server port (default: {config.DEFAULT_API_PORT})')

    test_parser = subparsers.add_parser('test', help='Run Test')
    test_parser.add_argument('--host', default='localhost', help='Test server address (default: localhost)')
    test_parser.add_argument('--port', type=int, default=config.DEFAULT_WS_PORT,
                             help=f'Test server port (default: {config.DEFAULT_WS_PORT})')
    test_parser.add_argument('--user', default='test_user', help='User id to identify as (default: test_user)')
    test_parser.add_argument('message', help='Message to send in test')

    args = parser.parse_args()

    return args


def main():
    args = parse()

    if args.command == 'server':
        server.server(port=args.port)
    elif args.command == 'srv-only':
        server.server(port=args.port, srv_only=True)
    elif args.command == 'api-only':
        server.api(port=args.port)
    elif args.command == 'test':
        test_main(args.message, host=args.host, port=args.port, user_id=args.user)
    else:
        raise Exception('Unknown command')

if __name__ == '__main__':
    main()
