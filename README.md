# kpng

kpng keeps the networking view of a cluster (services, endpoints and
nodes) in an in-memory store. It turns changes to that store into streams
of set/delete/sync operations and renders the result as nftables or
iptables rules.

## Modules

- `kpng.localnet`: the data model. It holds `Service`, `PortMapping`,
  `ServiceIPs`, `Endpoint`, `EndpointInfo`, `EndpointConditions`, `Node`,
  `NodeInfo`, `ServiceInfo`, `Ref` and `OpItem`, and the enums `Protocol`,
  `Set` and `OpKind`. `IPSet` keeps sorted, de-duplicated lists of IPv4 and
  IPv6 addresses. `encode_message` and `decode_message` give a
  deterministic encoding, `xxhash64` is a 64-bit xxHash, and
  `message_hash` hashes an encoded message.
- `kpng.diffstore`: `DiffStore` records, for each key, whether it was
  changed, left unchanged or deleted between two rounds.
- `kpng.watchstate`: `WatchState` sends the differences held in a group of
  diff stores to a sink as operations. When the sink fails, it records a
  `WatchAborted` error.
- `kpng.proxystore`: `Store` is a store with revision numbers. It is
  written in `Store.update` and read in `Store.view`, and both pass a `Tx`
  transaction to the given function. `view` waits for a revision newer than
  the one given. Writing in a read-only transaction raises `ReadOnlyError`.
- `kpng.endpoints`: `for_node` picks the ready endpoints a node should
  use, following the service's topology keys.
- `kpng.store2diff`: `DiffJob`, `GlobalDiffJob` and `LocalDiffJob` stream
  the global view of a store, or the view of one node, to a sink.
- `kpng.backendsink`: `BackendSink` rebuilds services with their endpoints
  from an operation stream and hands them, as `ServiceEndpoints`, to a
  callback on every sync. `to_array_callback` and `array_backend` adapt
  handlers that take the complete list.
- `kpng.statefile`: `load_global_state` and `dump_global_state` read and
  write the global state as YAML. `StoreToFileJob` writes the store to a
  file on every new revision. `FileToStoreJob` polls a file and loads it
  into the store.
- `kpng.chainbuffers`: `ChainBuffer` and `ChainBufferSet` hold the text of
  nftables chains and maps and remember a hash of each between rounds.
  This module also provides `DnatRule` and `vmap_add`.
- `kpng.nft`: `NftBackend` renders services as the `k8s_svc` and
  `k8s_svc6` tables and feeds the script to `nft -f -`. After the first
  round it sends only the chains that changed. It is configured with
  `NftConfig`.
- `kpng.iptables_extip`: `render_rules` builds filter, DNAT and SNAT rules
  for the external IPv4 addresses of services. `handle_endpoints` loads
  those rules with `iptables-restore --noflush`.
- `kpng.cli`: the `kpng` command, plus the `print_state`, `IPPort` and
  `Uniq` helpers.

## Installing

```
pip install .
```

Applying rules runs the `nft` or `iptables-restore` programs, so these
must be installed on the host. Dry-run modes only render the rules.

## Command line

```
kpng --help
```

The state always comes from a YAML file, which is polled every second:

```
kpng file -i global-state.yaml to-file -o copy.yaml
kpng file -i global-state.yaml to-local --node-name node1 to-nft --dry-run
```

- `to-file` writes the global state back out to the file named by
  `--output`.
- `to-local ... to-nft` computes the services and endpoints for the node
  and applies them with nftables. It accepts the options `--dry-run`,
  `--hook-priority`, `--skip-comments`, `--split-bits`, `--split-bits6`
  and `--maps-count`.
- `to-iptables` and `to-ipvs` exist but only report "not implemented".

`--cpuprofile FILE` writes a summary of call counts and times. `-v 1`
turns on debug logging. The command runs until it receives SIGINT,
SIGTERM or SIGHUP, and a second signal forces it to exit.

## Using it as a library

```python
from kpng.localnet import IPSet
from kpng.diffstore import DiffStore, ItemState

ips = IPSet()
ips.add("10.0.0.2")
ips.add("10.0.0.1")
ips.add("::1")          # ips.v4 == ["10.0.0.1", "10.0.0.2"], ips.v6 == ["::1"]

store = DiffStore()
store.set(b"a", 1, "alice")
store.set(b"b", 2, "bob")
print(store.updated())

store.reset(ItemState.DELETED)
store.set(b"a", 1, "alice")
print(store.deleted())  # "b" was not set again
```

Rendering nftables rules without running `nft`:

```python
from kpng.nft import NftBackend, NftConfig

backend = NftBackend(NftConfig(dry_run=True))
script = backend.callback(service_endpoints)  # an iterable of ServiceEndpoints
```

## What it does not do

- It does not watch a cluster API server. The global state can only be
  loaded from a YAML file.
- It has no network server or client. Operation streams pass between
  objects in the same process, through sinks.
- It has no iptables or IPVS backend for cluster IPs. `kpng.iptables_extip`
  handles only external IPv4 addresses, and is not wired into the `kpng`
  command.