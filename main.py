#!/usr/bin/env python3
"""
Identity Provisioner - RBAC, access package, MFA and HR automation for Entra ID
Main entry point for the CLI application
"""
import sys

from identity_provisioner.cli import main

if __name__ == "__main__":
    sys.exit(main())
