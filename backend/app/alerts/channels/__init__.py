"""
channels — Where accepted alerts are surfaced.

Each channel module exposes:
    render(record) → dict

    in_app_dialog        foreground observer (dialog with map / call actions)
    system_notification  background observer (OS notification)

outbox.ChannelOutbox wraps a renderer into the sink an observer registers.
The same record may appear on both channels; that is expected.
"""
