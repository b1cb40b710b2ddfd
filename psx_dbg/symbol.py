# (c) Copyright 2022 Aaron Kimball

from sortedcontainers import SortedDict


class Symbol(object):
    """
    An internal symbol table entry; represents a single named symbol from the
    ELF .symtab.
    """

    def __init__(self, name, addr, size, sym_type='STT_FUNC'):
        self.name = name
        self.addr = addr
        self.size = size
        self.sym_type = sym_type

    @staticmethod
    def from_elf(elf_sym):
        return Symbol(elf_sym.name, elf_sym.entry['st_value'], elf_sym.entry['st_size'],
                      elf_sym.entry['st_info']['type'])

    def is_function(self):
        return self.sym_type == 'STT_FUNC'

    def __repr__(self):
        return f'{self.name} @ {self.addr:08x} <len={self.size}>'


class SymbolTable(object):
    """
    Symbols loaded from a program image, indexed both by name and by address.
    """

    def __init__(self):
        self._addr_to_symbol = SortedDict()
        self._symbols = SortedDict()

    def add(self, sym):
        self._symbols[sym.name] = sym
        existing = self._addr_to_symbol.get(sym.addr)
        if existing is None or not existing.is_function():
            # Prefer the function when a label shares its address.
            self._addr_to_symbol[sym.addr] = sym

    def load_elf(self, elf):
        """
        Populate from the .symtab of an elftools ELFFile.
        """
        syms = elf.get_section_by_name(".symtab")
        if syms is None:
            return

        for elf_sym in syms.iter_symbols():
            sym_type = elf_sym.entry['st_info']['type']
            if not elf_sym.name:
                continue
            if sym_type == "STT_NOTYPE" or sym_type == "STT_OBJECT" or sym_type == "STT_FUNC":
                # This has a location worth memorizing
                self.add(Symbol.from_elf(elf_sym))

    def lookup_sym(self, name):
        return self._symbols.get(name)

    def function_sym_by_pc(self, pc):
        """
        Given a $PC pointing somewhere within a function body, return the symbol for
        the function.
        """
        for addr in self._addr_to_symbol.irange(maximum=pc, reverse=True):
            sym = self._addr_to_symbol[addr]
            if not sym.is_function():
                continue

            if addr + sym.size > pc:
                return sym  # Found it.

            # Nearest function below pc doesn't cover it.
            return None

        return None

    def __len__(self):
        return len(self._symbols)
