"""PyStove - stove / thermostat coordination and maintenance tracking for AppDaemon."""
