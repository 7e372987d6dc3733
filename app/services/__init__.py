"""
                        Services Module

Contains the business logic behind the HTTP layer. The payment gateway
follows the hybrid pattern: a Mock (development) and a Real (staging and
production) implementation behind one interface.

Services:
    - payment: Midtrans Snap token requests and notification signatures
    - availability: table conflict windows and booking rules
    - discounts: discount code resolution
    - checkout: order/booking creation and token issuance
    - payables: order and reservation state transitions
    - reconciler: gateway notification handling
    - admin: staff status changes
"""
