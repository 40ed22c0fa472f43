"""mcbridge - Matter <-> LwM2M (CoAP) bridge engine.

Exposes the attributes of a Matter device as LwM2M resources over CoAP, and
lets the Matter side read and write attributes of an LwM2M device.
"""

__version__ = "0.1.0"
