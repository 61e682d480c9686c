"""
Transport layer: the aiomqtt-backed session and the asyncio loop thread
that lets blocking callers drive it.
"""
