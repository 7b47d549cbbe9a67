"""Real-time delivery — dispatcher events → WebSocket clients.

Learn: Each browser connection is attached to the dispatcher as its own
context. The client decides what to listen to; the server only ever tells
it *which* event fired. Fetching the new state goes through the regular
API, where access control lives.
"""
