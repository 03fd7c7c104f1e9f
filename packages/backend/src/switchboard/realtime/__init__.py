"""Real-time push: Redis pub/sub + WebSocket.

Agent events are durable rows first; Redis fan-out is a latency shortcut:
1. EventPublisher → Redis PUBLISH switchboard:agents:<name>
2. Redis SUBSCRIBE → WebSocket → connected agent
"""
