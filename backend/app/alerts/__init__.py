"""
alerts — Community emergency alert pipeline.

Sub-modules:
    models          — AlertRecord and friends (wire format, enums)
    freshness       — per-observer watermark filter (accept / reject)
    dispatcher      — one store tail per community, fan-out to observers
    observers       — foreground / background observers and coordinator
    publisher       — sender side: location fallback, record build, publish
    channels/       — presentation payloads (in-app dialog, system notification)
    alert_service   — wires the above together for one process
"""
