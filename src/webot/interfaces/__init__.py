"""interfaces/ — user-facing front ends for the gateway session client."""
