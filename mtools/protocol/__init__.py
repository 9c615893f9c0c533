"""
Session protocol: framing, message classification and loss accounting.
"""
