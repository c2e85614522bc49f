"""Bank branch queue management system (MQTT-based).

A queue engine owns tickets and counters for one or more branches and
coordinates, over MQTT pub/sub (via a broker like Mosquitto):
- ticket kiosks
- counter terminals
- hall displays
- an optional ticket generator (Poisson arrivals) for load testing / simulation

The engine logic (`bank_queue.manager.QueueManager`) runs without a broker.
"""
