"""
Services Package
Version: 1.0

IMPORTANT: Keep this file minimal to avoid circular imports.
Import services directly where needed.
"""

# DO NOT import services here to avoid circular imports
# Import services directly in the modules that need them:
#   from services.booking_aggregator import BookingAggregator
#   from services.wiring import build_services
