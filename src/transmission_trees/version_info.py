# src/transmission_trees/version_info.py
VERSION = '0.1.0'
