"""
Dataflow Layer

Market data I/O layer for the chart front end. Contains:
- adapters: Binance REST/WebSocket, TimescaleDB and NATS clients
- snapshot: Bounded historical candle windows
- stream: Reconnecting push subscriptions
- candle_window: Fixed-capacity candle series and merge reducer
- feeds: Per-upstream bundles of the above
- query: FastAPI read-model service
"""
