# split_bill/errors.py


class BillSplitError(Exception):
    """Base class for failures raised by the collaborators around the bill store."""


class ExtractionError(BillSplitError):
    """Receipt extraction failed or returned data that could not be used."""


class SuggestionError(BillSplitError):
    """The assignment suggestion call failed or returned nothing usable."""
