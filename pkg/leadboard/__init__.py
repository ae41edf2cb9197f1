# Leadboard: kanban lead tracker over a remote document store
#
# Components:
#   schema.py      - Data model (Column, Lead, Customer, User) and wire encoding
#   errors.py      - Store and validation error taxonomy
#   appwrite.py    - REST adapters: documents, blob storage, identity (requests)
#   local_store.py - SQLite document backend (offline / tests)
#   client.py      - Typed async Entity Store Client
#   board_state.py - In-memory board projection
#   ordering.py    - Drag-and-drop move computation
#   reconciler.py  - Optimistic apply / persist / resync controller
#   board.py       - Composition root: drag wiring, bootstrap, user intents
#   runtime.py     - Background event loop for synchronous callers
#   config.py      - YAML + environment configuration
