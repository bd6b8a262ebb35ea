"""Application name and version.

VERSION follows the pattern MAJOR.MINOR.PATCH+YYYYMMDD where the date is the
first day of the release month.
"""

MODULE = "api-template"
VERSION = "1.0.0+20261001"
