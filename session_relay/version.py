"""Session Relay Meta information.
   Session Relay keeps encrypted user sessions behind an HTTP/WebSocket server.
"""
__title__ = 'session_relay'
__description__ = (
   'Session Relay keeps encrypted user sessions and live WebSocket '
   'connections behind a small aiohttp server.'
)
__version__ = '0.1.0'
__copyright__ = 'Copyright (c) 2026 Session Relay contributors'
__author__ = 'Session Relay contributors'
__license__ = 'Apache-2.0'
