#!/usr/bin/env python3
"""Backup runner, reads all configuration from the environment"""
import sys

from sanity_backup.cli import main

if __name__ == '__main__':
    sys.exit(main())
