# Copyright 2025 Ilya Makarov
#
# Licensed under the Business Source License 1.1
# Change Date: 2028-11-05
# Change License: Apache License 2.0

"""Melody - privilege-aware configuration state capture and restore"""

__version__ = "0.4.0"
