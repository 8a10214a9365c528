"""
Clinic backend: appointment scheduling and reminders over a key-value record store.

Structure:
- config.py       : settings from env/.env, logging setup
- db.py           : SQLAlchemy engine and sessions
- models.py       : records table and enums
- entities.py     : users, pets, appointments, blocks, health records, reminders
- store.py        : record store (get/set/delete/multi-get/prefix scan), index lists, key locks
- duplicates.py   : duplicate pet detection
- services.py     : users, pets, health records
- scheduling.py   : slots, availability, appointments, blocks
- reminders.py    : derived reminders and dismissals
- dashboard.py    : staff statistics
- identity.py     : bearer token verification
- api_main.py     : FastAPI app
- cli.py          : simulates external callers via CLI
- seed.py         : demo data
"""
