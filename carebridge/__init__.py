"""
CareBridge Coordination Core
============================

Python coordination layer for peer support and outcome tracking around
surgery.  Patients connect with peers who share their procedure, doctors
link to their patients through QR link codes and collect pre- and
post-operative outcome surveys, and related parties meet over scheduled
or immediate voice and video calls.

Every state transition is a compare-and-swap on a versioned record and is
written to an append-only, hash-chained audit log.  External systems
(identity, notifications, conferencing, telephony) are reached only
through the contracts in ``carebridge.gateways``.

DISCLAIMER: This software is not a medical device.  Peer calls and survey
results support, and never replace, the care provided by the patient's
clinical team.
"""

__version__ = "0.1.0"
