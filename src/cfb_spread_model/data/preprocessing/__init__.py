"""Hygiene (winsorize / standardize) and calibration-row assembly."""
