"""
Hostex bridge — mirrors Hostex guest conversations into Matrix rooms and
relays host replies back to Hostex.

The bridge logs in as a single Matrix account, keeps one room per Hostex
conversation, and accepts administrative commands from one configured
admin in a dedicated control room.
"""
