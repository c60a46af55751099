"""
selfsigned-mqtt: MQTT over TLS to a broker signed by a private CA.

Pins exactly one CA certificate as the trust anchor, connects one MQTT session
over that transport, and reports lost connections, arriving messages and
completed deliveries to the host.
"""
