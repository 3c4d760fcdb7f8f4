"""
Upstream step client adapters

Each adapter implements the ReservationStepClient protocol for one booking
supplier. The pipeline only talks to the protocol.
"""
