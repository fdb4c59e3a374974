"""Chain collaborators: web3 client, settlement submitter, event listener."""
