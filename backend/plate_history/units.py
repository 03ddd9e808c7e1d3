# backend/plate_history/units.py

# Confidence is stored as a 0-1 fraction but clients filter and display 0-100.

# Enough digits for any confidence the recognition service reports
PERCENT_DIGITS = 6


def percent_to_fraction(value):
    return value / 100


def fraction_to_percent(value):
    # value * 100 drifts in binary (0.57 * 100 == 56.99999999999999)
    return round(value * 100, PERCENT_DIGITS)
