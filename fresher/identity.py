"""
Fresher identity: version and banner shared by the CLI.
"""

__version__ = "0.4.0"
__codename__ = "FRESHER"
__tagline__ = "Fresh context, every iteration."

BANNER = r"""
  ___             _
 | __| _ ___ _ __| |_  ___ _ _
 | _| '_/ -_|_-<| ' \/ -_) '_|
 |_||_| \___/__/|_||_\___|_|
"""
