"""
Client-side facade.
`MqttClient` wraps one transport session behind blocking calls and
re-emits transport events through `EventChannel`s.
"""
