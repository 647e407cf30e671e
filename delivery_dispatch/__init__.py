"""
                Delivery Dispatch Core

Order lifecycle, driver dispatch and live-tracking core of a multi-tenant
delivery platform, plus the offline sync agent used by its mobile clients.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
