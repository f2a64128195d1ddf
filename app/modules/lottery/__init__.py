"""Lottery module: bin/pack inventory reads and the two-phase day close"""
