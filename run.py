#!/usr/bin/env python3
"""Backup runner for cron and systemd timers"""
import sys

from gitea_backup.cli import main

if __name__ == '__main__':
    sys.exit(main())
