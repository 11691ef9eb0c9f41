"""Container lifecycle and in-container command execution over the Docker engine API.

Every SDK call is blocking and is pushed to a worker thread so the event loop
keeps serving other runs while one waits on the daemon."""
