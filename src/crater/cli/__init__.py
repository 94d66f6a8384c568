# Copyright (c) Syntropy Systems
"""crater command line interface."""
