"""
Test suite for Signal K to LwM2M Bridge

This package contains unit tests for:
- Conversions and the 3GPP TS 23.032 velocity codec
- Mandatory resource cache and validation
- Mapping table, dispatch engine and stream subscription
- LwM2M client command formatting and configuration loading
"""
